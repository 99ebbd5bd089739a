"""WhatsApp conversation handling.

Incoming text is either a short command (balance, today's spending, goals),
a numeric answer to a pending "which account?" question, or free text that
an LLM turns into a transaction.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from config import Settings, get_settings
from csv_utils import format_brl
from models import (
    AccountType,
    GoalStatus,
    PendingSelection,
    TransactionType,
    WhatsAppIntegration,
)
from schemas import ExtractedTransaction, TransactionIn
from services import (
    AccountService,
    CategoryService,
    CreditCardService,
    GoalService,
    ReportService,
    TransactionService,
    local_today,
)


logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Desculpe, ocorreu um erro ao processar sua solicitação."
NO_OWNER_REPLY = (
    "Desculpe, você não tem nenhuma conta ou cartão ativo para registrar esta transação."
)
NO_PENDING_REPLY = "Não há nenhuma transação aguardando escolha de conta."
NOT_UNDERSTOOD_REPLY = (
    "Não consegui entender a transação. Tente algo como: 'gastei 25 reais no almoço'."
)

EXTRACTION_PROMPT = (
    "Você extrai transações financeiras de mensagens em português. "
    "Responda somente com um objeto JSON com as chaves: "
    '"amount_cents" (inteiro positivo, em centavos), '
    '"type" ("income" ou "expense"), '
    '"category" (nome curto da categoria ou null) e '
    '"description" (texto curto).'
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ExtractionError(RuntimeError):
    pass


class TransactionExtractor:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def _post(self, payload: dict) -> dict:
        if not self.settings.llm_api_key:
            raise ExtractionError("LLM API key is not configured")
        req = Request(
            self.settings.llm_api_url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.settings.llm_api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with urlopen(req, timeout=self.settings.llm_timeout_secs) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace")
            raise ExtractionError(f"LLM API error: {exc.code} {body}") from exc
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise ExtractionError("LLM API request failed") from exc

    def extract(self, text: str) -> ExtractedTransaction:
        response = self._post(
            {
                "model": self.settings.llm_model,
                "messages": [
                    {"role": "system", "content": EXTRACTION_PROMPT},
                    {"role": "user", "content": text},
                ],
                "response_format": {"type": "json_object"},
                "temperature": 0,
            }
        )
        try:
            content = response["choices"][0]["message"]["content"]
            return ExtractedTransaction.model_validate(json.loads(content))
        except (KeyError, IndexError, TypeError, json.JSONDecodeError) as exc:
            raise ExtractionError("Unexpected LLM response shape") from exc
        except ValidationError as exc:
            raise ExtractionError(f"LLM returned an invalid transaction: {exc}") from exc


@dataclass(frozen=True)
class OwnerChoice:
    kind: str  # "account" or "card"
    id: int
    label: str


@dataclass
class PendingSelectionState:
    phone_number: str
    user_id: int
    extraction: ExtractedTransaction
    options: list[OwnerChoice]
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return _as_naive_utc(now) >= _as_naive_utc(self.expires_at)


class PendingSelectionStore(ABC):
    @abstractmethod
    def get(self, phone_number: str, now: Optional[datetime] = None) -> Optional[PendingSelectionState]:
        ...

    @abstractmethod
    def put(self, state: PendingSelectionState) -> None:
        ...

    @abstractmethod
    def pop(self, phone_number: str) -> Optional[PendingSelectionState]:
        ...

    @abstractmethod
    def sweep_expired(self, now: datetime) -> int:
        ...


class InMemoryPendingSelectionStore(PendingSelectionStore):
    def __init__(self) -> None:
        self._items: dict[str, PendingSelectionState] = {}
        self._lock = threading.Lock()

    def get(self, phone_number, now=None):
        now = now or _utcnow()
        with self._lock:
            state = self._items.get(phone_number)
            if state is not None and state.is_expired(now):
                del self._items[phone_number]
                return None
            return state

    def put(self, state):
        with self._lock:
            self._items[state.phone_number] = state

    def pop(self, phone_number):
        with self._lock:
            return self._items.pop(phone_number, None)

    def sweep_expired(self, now):
        with self._lock:
            expired = [k for k, v in self._items.items() if v.is_expired(now)]
            for key in expired:
                del self._items[key]
        return len(expired)


class SqlPendingSelectionStore(PendingSelectionStore):
    """Pending selections kept in the database, so they survive restarts."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    @staticmethod
    def _to_state(row: PendingSelection) -> PendingSelectionState:
        return PendingSelectionState(
            phone_number=row.phone_number,
            user_id=row.user_id,
            extraction=ExtractedTransaction.model_validate_json(row.extraction_json),
            options=[OwnerChoice(**item) for item in json.loads(row.options_json)],
            expires_at=row.expires_at,
        )

    def get(self, phone_number, now=None):
        now = now or _utcnow()
        with self.session_factory() as session:
            row = session.get(PendingSelection, phone_number)
            if row is None:
                return None
            state = self._to_state(row)
            if state.is_expired(now):
                session.delete(row)
                session.commit()
                return None
            return state

    def put(self, state):
        options_json = json.dumps(
            [{"kind": o.kind, "id": o.id, "label": o.label} for o in state.options]
        )
        with self.session_factory() as session:
            row = session.get(PendingSelection, state.phone_number)
            if row is None:
                row = PendingSelection(phone_number=state.phone_number)
                session.add(row)
            row.user_id = state.user_id
            row.extraction_json = state.extraction.model_dump_json()
            row.options_json = options_json
            row.expires_at = _as_naive_utc(state.expires_at)
            session.commit()

    def pop(self, phone_number):
        with self.session_factory() as session:
            row = session.get(PendingSelection, phone_number)
            if row is None:
                return None
            state = self._to_state(row)
            session.delete(row)
            session.commit()
            return state

    def sweep_expired(self, now):
        with self.session_factory() as session:
            result = session.execute(
                delete(PendingSelection).where(
                    PendingSelection.expires_at <= _as_naive_utc(now)
                )
            )
            session.commit()
            return result.rowcount or 0


def build_pending_store(session_factory: Callable[[], Session]) -> PendingSelectionStore:
    if get_settings().pending_selection_store == "memory":
        return InMemoryPendingSelectionStore()
    return SqlPendingSelectionStore(session_factory)


class WhatsAppClient:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def send_text(self, to: str, body: str) -> None:
        if not self.settings.whatsapp_token or not self.settings.whatsapp_phone_number_id:
            logger.warning("whatsapp_send_skipped: to=%s reason=not_configured", to)
            return
        url = (
            f"{self.settings.whatsapp_api_url.rstrip('/')}/"
            f"{self.settings.whatsapp_phone_number_id}/messages"
        )
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": body},
        }
        req = Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.settings.whatsapp_token}",
                "Content-Type": "application/json",
            },
        )
        try:
            with urlopen(req, timeout=10) as resp:
                resp.read()
        except (URLError, TimeoutError) as exc:
            raise RuntimeError(f"Failed to send WhatsApp message to {to}") from exc


class ChatbotService:
    def __init__(
        self,
        session: Session,
        extractor: TransactionExtractor,
        store: PendingSelectionStore,
        *,
        ttl_secs: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.session = session
        self.extractor = extractor
        self.store = store
        self.ttl = timedelta(
            seconds=ttl_secs or get_settings().pending_selection_ttl_secs
        )
        self.clock = clock

    def user_for_phone(self, phone_number: str) -> Optional[int]:
        stmt = select(WhatsAppIntegration).where(
            WhatsAppIntegration.phone_number == phone_number,
            WhatsAppIntegration.is_active.is_(True),
        )
        integration = self.session.scalar(stmt)
        return integration.user_id if integration else None

    def handle_message(self, phone_number: str, text: str) -> Optional[str]:
        """Reply to one message, or None when the number is not linked."""
        user_id = self.user_for_phone(phone_number)
        if user_id is None:
            logger.info("whatsapp_unknown_number: phone=%s", phone_number)
            return None
        try:
            return self._dispatch(user_id, phone_number, text.strip())
        except Exception:
            logger.exception("whatsapp_handle_failed: phone=%s", phone_number)
            self.session.rollback()
            return FALLBACK_REPLY

    def _dispatch(self, user_id: int, phone_number: str, text: str) -> str:
        if text.isdigit():
            return self._apply_selection(user_id, phone_number, int(text))

        command = text.lower()
        if command in ("saldo", "balance"):
            total = AccountService(self.session, user_id).total_balance()
            return f"💰 Saldo total das contas: {format_brl(total)}"
        if command == "gastos hoje":
            spent = ReportService(self.session, user_id).expenses_on(local_today())
            return f"📉 Gastos de hoje: {format_brl(spent)}"
        if command in ("metas", "goals"):
            return self._goals_reply(user_id)

        self.store.pop(phone_number)
        try:
            extraction = self.extractor.extract(text)
        except ExtractionError as exc:
            logger.warning("whatsapp_extraction_failed: phone=%s error=%s", phone_number, exc)
            return NOT_UNDERSTOOD_REPLY

        options = self._owner_choices(user_id, extraction)
        if not options:
            return NO_OWNER_REPLY
        if len(options) == 1:
            return self._post(user_id, extraction, options[0])

        self.store.put(
            PendingSelectionState(
                phone_number=phone_number,
                user_id=user_id,
                extraction=extraction,
                options=options,
                expires_at=self.clock() + self.ttl,
            )
        )
        lines = [
            f"{extraction.description} - {format_brl(extraction.amount_cents)}",
            "Onde devo registrar? Responda com o número:",
        ]
        lines.extend(f"{idx}. {choice.label}" for idx, choice in enumerate(options, start=1))
        return "\n".join(lines)

    def _apply_selection(self, user_id: int, phone_number: str, choice: int) -> str:
        state = self.store.get(phone_number, self.clock())
        if state is None or state.user_id != user_id:
            return NO_PENDING_REPLY
        if not 1 <= choice <= len(state.options):
            return f"Opção inválida. Responda com um número entre 1 e {len(state.options)}."
        self.store.pop(phone_number)
        return self._post(user_id, state.extraction, state.options[choice - 1])

    def _owner_choices(
        self, user_id: int, extraction: ExtractedTransaction
    ) -> list[OwnerChoice]:
        choices = [
            OwnerChoice("account", account.id, account.name)
            for account in AccountService(self.session, user_id).list_all()
            if account.type != AccountType.investment
        ]
        if extraction.type == "expense":
            choices.extend(
                OwnerChoice("card", card.id, f"Cartão {card.name}")
                for card in CreditCardService(self.session, user_id).list_all()
            )
        return choices

    def _post(
        self, user_id: int, extraction: ExtractedTransaction, owner: OwnerChoice
    ) -> str:
        txn_type = TransactionType(extraction.type)
        try:
            category_id = None
            if extraction.category:
                category_id = (
                    CategoryService(self.session, user_id)
                    .resolve(extraction.category, txn_type)
                    .id
                )
            data = TransactionIn(
                description=extraction.description,
                amount_cents=extraction.amount_cents,
                type=txn_type,
                date=local_today(),
                account_id=owner.id if owner.kind == "account" else None,
                credit_card_id=owner.id if owner.kind == "card" else None,
                category_id=category_id,
            )
            TransactionService(self.session, user_id).create(data)
        except ValueError as exc:
            self.session.rollback()
            return f"Não foi possível registrar: {exc}"
        label = "Receita" if txn_type == TransactionType.income else "Despesa"
        return (
            f"✅ {label} registrada: {extraction.description} - "
            f"{format_brl(extraction.amount_cents)} ({owner.label})"
        )

    def _goals_reply(self, user_id: int) -> str:
        goals = GoalService(self.session, user_id).list_all(GoalStatus.active)
        if not goals:
            return "Você não tem metas ativas."
        lines = ["🎯 Metas ativas:"]
        for goal in goals:
            lines.append(
                f"- {goal.title}: {format_brl(goal.current_cents)} de "
                f"{format_brl(goal.target_cents)} ({GoalService.progress_percent(goal)}%)"
            )
        return "\n".join(lines)
