import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        default_currency: str,
        whatsapp_api_url: str,
        whatsapp_token: str,
        whatsapp_phone_number_id: str,
        whatsapp_verify_token: str,
        llm_api_url: str,
        llm_api_key: str,
        llm_model: str,
        llm_timeout_secs: float,
        pending_selection_ttl_secs: int,
        pending_selection_store: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.default_currency = default_currency
        self.whatsapp_api_url = whatsapp_api_url
        self.whatsapp_token = whatsapp_token
        self.whatsapp_phone_number_id = whatsapp_phone_number_id
        self.whatsapp_verify_token = whatsapp_verify_token
        self.llm_api_url = llm_api_url
        self.llm_api_key = llm_api_key
        self.llm_model = llm_model
        self.llm_timeout_secs = llm_timeout_secs
        self.pending_selection_ttl_secs = pending_selection_ttl_secs
        self.pending_selection_store = pending_selection_store


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "America/Sao_Paulo")
    csrf_secret = os.getenv(
        "FINANCE_CSRF_SECRET",
        "6f1d0c3b2a9e4f7d8c5b1a0e9d8c7b6a5f4e3d2c1b0a99887766554433221100",
    )
    default_currency = os.getenv("FINANCE_DEFAULT_CURRENCY", "BRL").upper()
    whatsapp_api_url = os.getenv(
        "FINANCE_WHATSAPP_API_URL", "https://graph.facebook.com/v19.0"
    )
    whatsapp_token = os.getenv("FINANCE_WHATSAPP_TOKEN", "")
    whatsapp_phone_number_id = os.getenv("FINANCE_WHATSAPP_PHONE_NUMBER_ID", "")
    whatsapp_verify_token = os.getenv("FINANCE_WHATSAPP_VERIFY_TOKEN", "")
    llm_api_url = os.getenv(
        "FINANCE_LLM_API_URL", "https://api.openai.com/v1/chat/completions"
    )
    llm_api_key = os.getenv("FINANCE_LLM_API_KEY", "")
    llm_model = os.getenv("FINANCE_LLM_MODEL", "gpt-4o-mini")
    llm_timeout_secs = float(os.getenv("FINANCE_LLM_TIMEOUT_SECS", "15"))
    pending_selection_ttl_secs = int(
        os.getenv("FINANCE_PENDING_SELECTION_TTL_SECS", "300")
    )
    pending_selection_store = os.getenv(
        "FINANCE_PENDING_SELECTION_STORE", "database"
    ).lower()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        default_currency=default_currency,
        whatsapp_api_url=whatsapp_api_url,
        whatsapp_token=whatsapp_token,
        whatsapp_phone_number_id=whatsapp_phone_number_id,
        whatsapp_verify_token=whatsapp_verify_token,
        llm_api_url=llm_api_url,
        llm_api_key=llm_api_key,
        llm_model=llm_model,
        llm_timeout_secs=llm_timeout_secs,
        pending_selection_ttl_secs=pending_selection_ttl_secs,
        pending_selection_store=pending_selection_store,
    )
