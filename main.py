import logging
from datetime import date
from typing import Optional

from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    UploadFile,
)
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from billing import best_purchase_day, describe_purchase
from chatbot import (
    ChatbotService,
    TransactionExtractor,
    WhatsAppClient,
    build_pending_store,
)
from config import get_settings
from csrf import CSRF_HEADER, generate_csrf_token, validate_csrf_token
from database import SessionLocal, run_migrations
from exports import export_report_pdf, export_transactions_xlsx
from models import GoalStatus, TransactionType
from periods import Period, resolve_period
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    AccountUpdate,
    BudgetIn,
    BudgetOut,
    CategoryIn,
    CategoryOut,
    CategoryRenameIn,
    ContactChargeIn,
    ContactIn,
    ContactOut,
    CreditCardIn,
    CreditCardInvoiceOut,
    CreditCardOut,
    GoalContributionIn,
    GoalIn,
    GoalOut,
    InvestmentIn,
    InvestmentOut,
    InvestmentTransferIn,
    InvoicePaymentIn,
    InvoiceUpsertIn,
    MonthlyInvoiceOut,
    MutationOut,
    TransactionIn,
    TransactionOut,
    WebhookPayload,
)
from services import (
    AccountService,
    BudgetService,
    CSVService,
    CategoryService,
    ContactService,
    CreditCardService,
    GoalService,
    InvestmentService,
    InvestmentTransferService,
    InvoiceService,
    ReportService,
    TransactionFilters,
    TransactionService,
    get_current_user_id,
    local_today,
)


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Hub")

PAGE_SIZE = 50


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def require_csrf(request: Request) -> None:
    if not validate_csrf_token(request.headers.get(CSRF_HEADER), get_current_user_id()):
        raise HTTPException(status_code=403, detail="Invalid CSRF token")


pending_store = build_pending_store(SessionLocal)
scheduler_manager = SchedulerManager(pending_store)


@app.on_event("startup")
def startup_event():
    run_migrations()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    message = str(exc)
    status = 404 if message.endswith("not found") else 400
    return JSONResponse(status_code=status, content={"detail": message})


@app.exception_handler(StaleDataError)
async def stale_data_handler(request: Request, exc: StaleDataError):
    logger.warning("stale_write: path=%s", request.url.path)
    return JSONResponse(
        status_code=409,
        content={"detail": "The record was changed by another request; reload and retry"},
    )


def period_from_request(request: Request) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end, today=local_today())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _int_param(request: Request, name: str) -> Optional[int]:
    raw = request.query_params.get(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def filters_from_request(request: Request) -> TransactionFilters:
    type_param = request.query_params.get("type")
    txn_type = None
    if type_param:
        try:
            txn_type = TransactionType(type_param)
        except ValueError:
            txn_type = None
    return TransactionFilters(
        type=txn_type,
        account_id=_int_param(request, "account_id"),
        credit_card_id=_int_param(request, "card_id"),
        category_id=_int_param(request, "category"),
        contact=request.query_params.get("contact") or "all",
        query=request.query_params.get("q"),
    )


@app.get("/api/csrf-token")
def csrf_token():
    return {"token": generate_csrf_token(get_current_user_id())}


# Accounts


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(include_inactive: bool = False, db: Session = Depends(get_db)):
    return AccountService(db).list_all(include_inactive=include_inactive)


@app.post(
    "/api/accounts",
    response_model=AccountOut,
    status_code=201,
    dependencies=[Depends(require_csrf)],
)
def create_account(payload: AccountIn, db: Session = Depends(get_db)):
    return AccountService(db).create(payload)


@app.patch(
    "/api/accounts/{account_id}",
    response_model=AccountOut,
    dependencies=[Depends(require_csrf)],
)
def update_account(account_id: int, payload: AccountUpdate, db: Session = Depends(get_db)):
    return AccountService(db).update(account_id, payload)


@app.delete(
    "/api/accounts/{account_id}",
    status_code=204,
    dependencies=[Depends(require_csrf)],
)
def deactivate_account(account_id: int, db: Session = Depends(get_db)):
    AccountService(db).deactivate(account_id)
    return Response(status_code=204)


@app.get("/api/accounts/{account_id}/balance")
def account_balance(account_id: int, db: Session = Depends(get_db)):
    service = AccountService(db)
    account = service.get(account_id)
    return {
        "account_id": account.id,
        "current_balance_cents": account.current_balance_cents,
        "real_balance_cents": service.real_balance(account.id),
    }


# Credit cards and invoices


@app.get("/api/cards", response_model=list[CreditCardOut])
def list_cards(include_inactive: bool = False, db: Session = Depends(get_db)):
    return CreditCardService(db).list_all(include_inactive=include_inactive)


@app.post(
    "/api/cards",
    response_model=CreditCardOut,
    status_code=201,
    dependencies=[Depends(require_csrf)],
)
def create_card(payload: CreditCardIn, db: Session = Depends(get_db)):
    return CreditCardService(db).create(payload)


@app.put(
    "/api/cards/{card_id}",
    response_model=CreditCardOut,
    dependencies=[Depends(require_csrf)],
)
def update_card(card_id: int, payload: CreditCardIn, db: Session = Depends(get_db)):
    return CreditCardService(db).update(card_id, payload)


@app.delete(
    "/api/cards/{card_id}",
    status_code=204,
    dependencies=[Depends(require_csrf)],
)
def deactivate_card(card_id: int, db: Session = Depends(get_db)):
    CreditCardService(db).deactivate(card_id)
    return Response(status_code=204)


@app.get("/api/cards/{card_id}/limit")
def card_limit(card_id: int, db: Session = Depends(get_db)):
    return CreditCardService(db).limit_summary(card_id)


@app.get("/api/cards/{card_id}/invoices", response_model=list[MonthlyInvoiceOut])
def card_invoices(
    card_id: int,
    month: Optional[str] = None,
    contact: str = "all",
    db: Session = Depends(get_db),
):
    invoices = InvoiceService(db).list_for_card(card_id, month_key=month, contact=contact)
    return [MonthlyInvoiceOut.model_validate(invoice) for invoice in invoices]


@app.get("/api/cards/{card_id}/invoices/current", response_model=MonthlyInvoiceOut)
def current_invoice(card_id: int, db: Session = Depends(get_db)):
    invoice = InvoiceService(db).current(card_id, today=local_today())
    return MonthlyInvoiceOut.model_validate(invoice)


@app.get("/api/cards/{card_id}/purchase-info")
def purchase_info(
    card_id: int, purchase_date: Optional[date] = Query(default=None, alias="date"),
    db: Session = Depends(get_db),
):
    card = CreditCardService(db).get(card_id)
    today = local_today()
    info = describe_purchase(
        purchase_date or today, card.closing_day, card.due_day, today=today
    )
    return {
        "invoice_month": info.period.key,
        "invoice_label": info.period.label,
        "closing_date": info.closing_date,
        "due_date": info.due_date,
        "days_until_due": info.days_until_due,
        "best_purchase_day": best_purchase_day(card.closing_day, card.best_purchase_day),
        "explanation": info.explanation,
    }


@app.put(
    "/api/invoices",
    response_model=CreditCardInvoiceOut,
    dependencies=[Depends(require_csrf)],
)
def upsert_invoice(payload: InvoiceUpsertIn, db: Session = Depends(get_db)):
    return InvoiceService(db).upsert(payload)


@app.post(
    "/api/cards/{card_id}/invoices/{year}/{month}/pay",
    dependencies=[Depends(require_csrf)],
)
def pay_invoice(
    card_id: int,
    year: int,
    month: int,
    payload: InvoicePaymentIn,
    db: Session = Depends(get_db),
):
    if not 0 <= month <= 11:
        raise HTTPException(status_code=400, detail="Invoice month must be between 0 and 11")
    invoice, result = InvoiceService(db).pay(card_id, month, year, payload)
    return {
        "invoice": CreditCardInvoiceOut.model_validate(invoice),
        "changes": MutationOut.model_validate(result),
    }


# Transactions


@app.get("/api/transactions", response_model=list[TransactionOut])
def list_transactions(
    request: Request, page: int = Query(default=1, ge=1), db: Session = Depends(get_db)
):
    period = period_from_request(request)
    filters = filters_from_request(request)
    return TransactionService(db).list(
        period, filters, limit=PAGE_SIZE, offset=(page - 1) * PAGE_SIZE
    )


@app.post(
    "/api/transactions",
    response_model=MutationOut,
    status_code=201,
    dependencies=[Depends(require_csrf)],
)
def create_transaction(payload: TransactionIn, db: Session = Depends(get_db)):
    return MutationOut.model_validate(TransactionService(db).create(payload))


@app.put(
    "/api/transactions/{transaction_id}",
    response_model=MutationOut,
    dependencies=[Depends(require_csrf)],
)
def update_transaction(
    transaction_id: int, payload: TransactionIn, db: Session = Depends(get_db)
):
    result = TransactionService(db).update(transaction_id, payload)
    return MutationOut.model_validate(result)


@app.delete(
    "/api/transactions/{transaction_id}",
    response_model=MutationOut,
    dependencies=[Depends(require_csrf)],
)
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return MutationOut.model_validate(TransactionService(db).delete(transaction_id))


@app.post(
    "/api/investment-transfers",
    response_model=MutationOut,
    status_code=201,
    dependencies=[Depends(require_csrf)],
)
def create_investment_transfer(
    payload: InvestmentTransferIn, db: Session = Depends(get_db)
):
    return MutationOut.model_validate(InvestmentTransferService(db).transfer(payload))


@app.delete(
    "/api/investment-transfers/{group_id}",
    response_model=MutationOut,
    dependencies=[Depends(require_csrf)],
)
def undo_investment_transfer(group_id: str, db: Session = Depends(get_db)):
    return MutationOut.model_validate(InvestmentTransferService(db).undo(group_id))


# Categories and contacts


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(include_archived: bool = False, db: Session = Depends(get_db)):
    return CategoryService(db).list_all(include_archived=include_archived)


@app.post(
    "/api/categories",
    response_model=CategoryOut,
    status_code=201,
    dependencies=[Depends(require_csrf)],
)
def create_category(payload: CategoryIn, db: Session = Depends(get_db)):
    return CategoryService(db).create(payload)


@app.patch(
    "/api/categories/{category_id}",
    response_model=CategoryOut,
    dependencies=[Depends(require_csrf)],
)
def rename_category(
    category_id: int, payload: CategoryRenameIn, db: Session = Depends(get_db)
):
    return CategoryService(db).rename(category_id, payload.name)


@app.post(
    "/api/categories/{category_id}/archive",
    status_code=204,
    dependencies=[Depends(require_csrf)],
)
def archive_category(category_id: int, db: Session = Depends(get_db)):
    CategoryService(db).archive(category_id)
    return Response(status_code=204)


@app.post(
    "/api/categories/{category_id}/restore",
    status_code=204,
    dependencies=[Depends(require_csrf)],
)
def restore_category(category_id: int, db: Session = Depends(get_db)):
    CategoryService(db).restore(category_id)
    return Response(status_code=204)


@app.get("/api/contacts", response_model=list[ContactOut])
def list_contacts(db: Session = Depends(get_db)):
    return ContactService(db).list_all()


@app.post(
    "/api/contacts",
    response_model=ContactOut,
    status_code=201,
    dependencies=[Depends(require_csrf)],
)
def create_contact(payload: ContactIn, db: Session = Depends(get_db)):
    return ContactService(db).create(payload)


@app.put(
    "/api/contacts/{contact_id}",
    response_model=ContactOut,
    dependencies=[Depends(require_csrf)],
)
def update_contact(contact_id: int, payload: ContactIn, db: Session = Depends(get_db)):
    return ContactService(db).update(contact_id, payload)


@app.delete(
    "/api/contacts/{contact_id}",
    status_code=204,
    dependencies=[Depends(require_csrf)],
)
def delete_contact(contact_id: int, db: Session = Depends(get_db)):
    ContactService(db).delete(contact_id)
    return Response(status_code=204)


@app.post("/api/contacts/{contact_id}/charge", dependencies=[Depends(require_csrf)])
def charge_contact(
    contact_id: int, payload: ContactChargeIn, db: Session = Depends(get_db)
):
    try:
        return ContactService(db).send_charge(
            payload.credit_card_id, contact_id, WhatsAppClient(), payload.month_key
        )
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


# Budgets, goals and investments


@app.get("/api/budgets")
def budgets_for_month(
    year: Optional[int] = None,
    month: Optional[int] = Query(default=None, ge=1, le=12),
    db: Session = Depends(get_db),
):
    today = local_today()
    year = year or today.year
    month = month or today.month
    progress = BudgetService(db).progress_for_month(year, month)
    return [
        {
            "budget": BudgetOut.model_validate(item["budget"]),
            "spent_cents": item["spent_cents"],
            "remaining_cents": item["remaining_cents"],
            "percent": item["percent"],
            "over_budget": item["over_budget"],
        }
        for item in progress
    ]


@app.put(
    "/api/budgets",
    response_model=BudgetOut,
    dependencies=[Depends(require_csrf)],
)
def upsert_budget(payload: BudgetIn, db: Session = Depends(get_db)):
    return BudgetService(db).upsert(payload)


@app.delete(
    "/api/budgets/{budget_id}",
    status_code=204,
    dependencies=[Depends(require_csrf)],
)
def delete_budget(budget_id: int, db: Session = Depends(get_db)):
    BudgetService(db).delete(budget_id)
    return Response(status_code=204)


@app.get("/api/goals")
def list_goals(status: Optional[GoalStatus] = None, db: Session = Depends(get_db)):
    return [
        {
            "goal": GoalOut.model_validate(goal),
            "percent": GoalService.progress_percent(goal),
        }
        for goal in GoalService(db).list_all(status)
    ]


@app.post(
    "/api/goals",
    response_model=GoalOut,
    status_code=201,
    dependencies=[Depends(require_csrf)],
)
def create_goal(payload: GoalIn, db: Session = Depends(get_db)):
    return GoalService(db).create(payload)


@app.put(
    "/api/goals/{goal_id}",
    response_model=GoalOut,
    dependencies=[Depends(require_csrf)],
)
def update_goal(goal_id: int, payload: GoalIn, db: Session = Depends(get_db)):
    return GoalService(db).update(goal_id, payload)


@app.post(
    "/api/goals/{goal_id}/contribute",
    response_model=GoalOut,
    dependencies=[Depends(require_csrf)],
)
def contribute_to_goal(
    goal_id: int, payload: GoalContributionIn, db: Session = Depends(get_db)
):
    return GoalService(db).contribute(goal_id, payload.amount_cents)


@app.delete(
    "/api/goals/{goal_id}",
    status_code=204,
    dependencies=[Depends(require_csrf)],
)
def delete_goal(goal_id: int, db: Session = Depends(get_db)):
    GoalService(db).delete(goal_id)
    return Response(status_code=204)


@app.get("/api/investments")
def investments_portfolio(db: Session = Depends(get_db)):
    summary = InvestmentService(db).portfolio_summary()
    return {
        "positions": [
            {
                "investment": InvestmentOut.model_validate(item["investment"]),
                "value_cents": item["value_cents"],
                "cost_cents": item["cost_cents"],
                "profit_cents": item["profit_cents"],
            }
            for item in summary["positions"]
        ],
        "total_value_cents": summary["total_value_cents"],
        "total_cost_cents": summary["total_cost_cents"],
        "total_profit_cents": summary["total_profit_cents"],
    }


@app.post(
    "/api/investments",
    response_model=InvestmentOut,
    status_code=201,
    dependencies=[Depends(require_csrf)],
)
def create_investment(payload: InvestmentIn, db: Session = Depends(get_db)):
    return InvestmentService(db).create(payload)


@app.put(
    "/api/investments/{investment_id}",
    response_model=InvestmentOut,
    dependencies=[Depends(require_csrf)],
)
def update_investment(
    investment_id: int, payload: InvestmentIn, db: Session = Depends(get_db)
):
    return InvestmentService(db).update(investment_id, payload)


@app.delete(
    "/api/investments/{investment_id}",
    status_code=204,
    dependencies=[Depends(require_csrf)],
)
def delete_investment(investment_id: int, db: Session = Depends(get_db)):
    InvestmentService(db).delete(investment_id)
    return Response(status_code=204)


# Reports, exports and imports


@app.get("/api/reports/summary")
def report_summary(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    filters = filters_from_request(request)
    return ReportService(db).summary(period, filters)


@app.get("/api/reports/export.csv")
def export_csv(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    filters = filters_from_request(request)
    transactions = ReportService(db).transactions(period, filters)
    csv_text = CSVService(db).export(transactions)
    filename = f"transacoes_{period.start}_{period.end}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/reports/export.xlsx")
def export_xlsx(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    filters = filters_from_request(request)
    service = ReportService(db)
    content = export_transactions_xlsx(
        service.transactions(period, filters), service.summary(period, filters)
    )
    filename = f"relatorio_{period.start}_{period.end}.xlsx"
    return Response(
        content=content,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/reports/export.pdf")
def export_pdf(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    filters = filters_from_request(request)
    service = ReportService(db)
    if period.slug == "all":
        label = "Todo o período"
    else:
        label = f"{period.start:%d/%m/%Y} a {period.end:%d/%m/%Y}"
    try:
        content = export_report_pdf(
            service.transactions(period, filters), service.summary(period, filters), label
        )
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    logger.info("report_pdf_generated: period=%s", period.slug)
    filename = f"relatorio_{period.start}_{period.end}.pdf"
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


async def _read_upload(file: UploadFile) -> str:
    raw = await file.read()
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="CSV must be UTF-8 encoded") from exc


@app.post("/api/import/csv/preview", dependencies=[Depends(require_csrf)])
async def import_csv_preview(
    file: UploadFile = File(...), db: Session = Depends(get_db)
):
    content = await _read_upload(file)
    rows, errors = CSVService(db).preview(content)
    return {"rows": rows, "errors": errors}


@app.post("/api/import/csv", dependencies=[Depends(require_csrf)])
async def import_csv(
    file: UploadFile = File(...),
    account_id: Optional[int] = Form(default=None),
    credit_card_id: Optional[int] = Form(default=None),
    db: Session = Depends(get_db),
):
    content = await _read_upload(file)
    count = CSVService(db).commit(
        content, account_id=account_id, credit_card_id=credit_card_id
    )
    return {"imported": count}


# WhatsApp webhook


@app.get("/webhooks/whatsapp")
def verify_whatsapp_webhook(request: Request):
    params = request.query_params
    settings = get_settings()
    if (
        params.get("hub.mode") == "subscribe"
        and settings.whatsapp_verify_token
        and params.get("hub.verify_token") == settings.whatsapp_verify_token
    ):
        return PlainTextResponse(params.get("hub.challenge", ""))
    raise HTTPException(status_code=403, detail="Verification failed")


@app.post("/webhooks/whatsapp")
async def receive_whatsapp_message(request: Request, db: Session = Depends(get_db)):
    # The provider retries anything but a 200, so bad payloads are only logged.
    try:
        payload = WebhookPayload.model_validate_json(await request.body())
    except ValidationError as exc:
        logger.warning("whatsapp_payload_rejected: errors=%s", exc.error_count())
        return {"status": "ok", "replies": 0}
    chatbot = ChatbotService(db, TransactionExtractor(), pending_store)
    client = WhatsAppClient()
    replies = 0
    for phone_number, text in payload.text_messages():
        reply = chatbot.handle_message(phone_number, text)
        if reply is None:
            continue
        try:
            client.send_text(phone_number, reply)
            replies += 1
        except RuntimeError:
            logger.exception("whatsapp_reply_failed: phone=%s", phone_number)
    return {"status": "ok", "replies": replies}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
