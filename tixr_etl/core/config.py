import os
from dataclasses import dataclass
from dotenv import load_dotenv
load_dotenv()


class ConfigError(RuntimeError):
    """Configuration incomplète : fatal au démarrage."""


REQUIRED = {
    "tixr_cpk": "TIXR_CPK",
    "tixr_secret_key": "TIXR_SECRET_KEY",
}


@dataclass(frozen=True)
class Settings:
    tixr_cpk: str = os.getenv("TIXR_CPK","")
    tixr_secret_key: str = os.getenv("TIXR_SECRET_KEY","")
    tixr_group_id: str = os.getenv("TIXR_GROUP_ID","980")
    tixr_base_url: str = os.getenv("TIXR_BASE_URL","https://studio.tixr.com")
    tixr_page_size: int = int(os.getenv("TIXR_PAGE_SIZE","1000"))
    tixr_page_concurrency: int = int(os.getenv("TIXR_PAGE_CONCURRENCY","3"))
    tixr_timeout: float = float(os.getenv("TIXR_TIMEOUT","15"))
    tixr_retry_attempts: int = int(os.getenv("TIXR_RETRY_ATTEMPTS","3"))
    tixr_retry_base_delay: float = float(os.getenv("TIXR_RETRY_BASE_DELAY","1"))
    tixr_retry_max_delay: float = float(os.getenv("TIXR_RETRY_MAX_DELAY","5"))
    sync_concurrency: int = int(os.getenv("SYNC_CONCURRENCY","10"))
    db_batch_size: int = int(os.getenv("DB_BATCH_SIZE","500"))
    artist_cache_ttl: float = float(os.getenv("ARTIST_CACHE_TTL","600"))
    venue_timezone: str = os.getenv("VENUE_TIMEZONE","America/Montreal")
    database_path: str = os.getenv("DATABASE_PATH","data/tixr.db")
    gsheet_id: str = os.getenv("GSHEET_ID","")
    gsheet_doc_title: str = os.getenv("GSHEET_DOC_TITLE","Tixr Ventes")
    gsheet_worksheet: str = os.getenv("GSHEET_WORKSHEET","sales")
    log_level: str = os.getenv("LOG_LEVEL","INFO")

    def missing(self) -> list[str]:
        return [env for attr, env in REQUIRED.items() if not getattr(self, attr)]

    def validate(self) -> "Settings":
        missing = self.missing()
        if missing:
            raise ConfigError(f"Variables d'environnement manquantes : {', '.join(missing)}")
        return self

settings = Settings()
