from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from chatbot import (
    FALLBACK_REPLY,
    NO_OWNER_REPLY,
    NO_PENDING_REPLY,
    ChatbotService,
    ExtractionError,
    InMemoryPendingSelectionStore,
    OwnerChoice,
    PendingSelectionState,
    SqlPendingSelectionStore,
    format_brl,
)
from database import Base
from models import Account, CreditCard, WhatsAppIntegration
from schemas import AccountIn, CreditCardIn, ExtractedTransaction, WebhookPayload
from services import AccountService, CreditCardService


PHONE = "5511999990000"
NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


class StubExtractor:
    def __init__(self, result=None, error=None) -> None:
        self.result = result or ExtractedTransaction(
            amount_cents=2_500, type="expense", category="Alimentação", description="Almoço"
        )
        self.error = error
        self.calls = []

    def extract(self, text: str) -> ExtractedTransaction:
        self.calls.append(text)
        if self.error:
            raise self.error
        return self.result


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    session = Session(engine)
    session.add(WhatsAppIntegration(phone_number=PHONE, user_id=1))
    session.commit()
    return session


def make_bot(session, extractor=None, clock=None):
    return ChatbotService(
        session,
        extractor or StubExtractor(),
        InMemoryPendingSelectionStore(),
        ttl_secs=300,
        clock=clock or Clock(NOW),
    )


def test_single_account_posts_immediately() -> None:
    session = make_session()
    account = AccountService(session).create(
        AccountIn(name="Conta", initial_balance_cents=10_000)
    )
    reply = make_bot(session).handle_message(PHONE, "gastei 25 no almoço")

    assert "Despesa registrada" in reply
    assert "R$ 25,00" in reply
    assert session.get(Account, account.id).current_balance_cents == 7_500


def test_several_owners_ask_for_a_choice() -> None:
    session = make_session()
    AccountService(session).create(AccountIn(name="Conta", initial_balance_cents=10_000))
    card = CreditCardService(session).create(
        CreditCardIn(name="Nubank", limit_cents=0, due_day=15, closing_day=5)
    )
    bot = make_bot(session)

    menu = bot.handle_message(PHONE, "almoço 25")
    assert "1. Conta" in menu
    assert "2. Cartão Nubank" in menu

    reply = bot.handle_message(PHONE, "2")
    assert "Cartão Nubank" in reply
    assert session.get(CreditCard, card.id).current_balance_cents == 2_500

    assert bot.handle_message(PHONE, "2") == NO_PENDING_REPLY


def test_out_of_range_choice_keeps_selection() -> None:
    session = make_session()
    AccountService(session).create(AccountIn(name="A", initial_balance_cents=10_000))
    AccountService(session).create(AccountIn(name="B", initial_balance_cents=10_000))
    bot = make_bot(session)

    bot.handle_message(PHONE, "almoço 25")
    assert "entre 1 e 2" in bot.handle_message(PHONE, "7")
    assert "registrada" in bot.handle_message(PHONE, "1")


def test_income_is_not_offered_to_cards() -> None:
    session = make_session()
    AccountService(session).create(AccountIn(name="Conta", initial_balance_cents=0))
    CreditCardService(session).create(
        CreditCardIn(name="Nubank", limit_cents=0, due_day=15, closing_day=5)
    )
    extractor = StubExtractor(
        ExtractedTransaction(amount_cents=100_000, type="income", description="Salário")
    )
    reply = make_bot(session, extractor).handle_message(PHONE, "recebi salário")
    assert "Receita registrada" in reply


def test_expired_selection_is_not_applied() -> None:
    session = make_session()
    AccountService(session).create(AccountIn(name="A", initial_balance_cents=10_000))
    AccountService(session).create(AccountIn(name="B", initial_balance_cents=10_000))
    clock = Clock(NOW)
    bot = make_bot(session, clock=clock)

    bot.handle_message(PHONE, "almoço 25")
    clock.now = NOW + timedelta(minutes=6)
    assert bot.handle_message(PHONE, "1") == NO_PENDING_REPLY


def test_no_owner_and_unknown_numbers() -> None:
    session = make_session()
    bot = make_bot(session)
    assert bot.handle_message(PHONE, "almoço 25") == NO_OWNER_REPLY
    assert bot.handle_message("5500000000000", "saldo") is None


def test_commands_do_not_call_the_extractor() -> None:
    session = make_session()
    AccountService(session).create(AccountIn(name="Conta", initial_balance_cents=12_345))
    extractor = StubExtractor()
    bot = make_bot(session, extractor)

    assert format_brl(12_345) in bot.handle_message(PHONE, "Saldo")
    assert "Gastos de hoje" in bot.handle_message(PHONE, "gastos hoje")
    assert bot.handle_message(PHONE, "metas") == "Você não tem metas ativas."
    assert extractor.calls == []


def test_failures_fall_back_to_apology() -> None:
    session = make_session()
    AccountService(session).create(AccountIn(name="Conta", initial_balance_cents=0))
    bot = make_bot(session, StubExtractor(error=RuntimeError("boom")))
    assert bot.handle_message(PHONE, "almoço 25") == FALLBACK_REPLY

    confused = make_bot(session, StubExtractor(error=ExtractionError("bad json")))
    assert "Não consegui entender" in confused.handle_message(PHONE, "???")


def test_format_brl() -> None:
    assert format_brl(123_456) == "R$ 1.234,56"
    assert format_brl(-500) == "-R$ 5,00"


def pending(expires_at: datetime) -> PendingSelectionState:
    return PendingSelectionState(
        phone_number=PHONE,
        user_id=1,
        extraction=ExtractedTransaction(amount_cents=100, type="expense", description="x"),
        options=[OwnerChoice("account", 1, "A"), OwnerChoice("card", 2, "Cartão B")],
        expires_at=expires_at,
    )


def test_in_memory_store_sweeps_expired_entries() -> None:
    store = InMemoryPendingSelectionStore()
    store.put(pending(NOW + timedelta(minutes=5)))

    assert store.sweep_expired(NOW) == 0
    assert store.get(PHONE, NOW) is not None
    assert store.sweep_expired(NOW + timedelta(minutes=5)) == 1
    assert store.get(PHONE, NOW) is None


@pytest.fixture()
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'pending.db'}")
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


def test_sql_store_round_trip_and_expiry(session_factory) -> None:
    store = SqlPendingSelectionStore(session_factory)
    store.put(pending(NOW + timedelta(minutes=5)))

    state = store.get(PHONE, NOW)
    assert state is not None
    assert state.options[1] == OwnerChoice("card", 2, "Cartão B")
    assert state.extraction.description == "x"

    assert store.get(PHONE, NOW + timedelta(minutes=10)) is None
    assert store.pop(PHONE) is None

    store.put(pending(NOW + timedelta(minutes=5)))
    assert store.sweep_expired(NOW + timedelta(minutes=6)) == 1


def test_webhook_payload_extracts_text_messages() -> None:
    payload = WebhookPayload.model_validate(
        {
            "object": "whatsapp_business_account",
            "entry": [
                {
                    "changes": [
                        {
                            "field": "messages",
                            "value": {
                                "messages": [
                                    {"from": PHONE, "text": {"body": "saldo"}},
                                    {"from": PHONE, "type": "image"},
                                ]
                            },
                        },
                        {"field": "statuses", "value": {}},
                    ]
                }
            ],
        }
    )
    assert payload.text_messages() == [(PHONE, "saldo")]
