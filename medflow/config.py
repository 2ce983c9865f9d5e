from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    input_path: str
    agents_path: str
    skill_path: str
    output_dir: str
    delimiter: str
    top_n: int
    request_timeout_seconds: float
    credential_env: str
    schedule_hour_utc: int
    schedule_minute_utc: int


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "medflow"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./medflow.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        input_path=os.getenv("INPUT_PATH", "./samples/transactions.csv"),
        agents_path=os.getenv("AGENTS_PATH", "./samples/agents.yaml"),
        skill_path=os.getenv("SKILL_PATH", "./samples/skill.md"),
        output_dir=os.getenv("OUTPUT_DIR", "./outputs"),
        delimiter=os.getenv("DELIMITER", ","),
        top_n=int(os.getenv("TOP_N", "10")),
        request_timeout_seconds=float(os.getenv("REQUEST_TIMEOUT_SECONDS", "60")),
        credential_env=os.getenv("CREDENTIAL_ENV", "GEMINI_API_KEY"),
        schedule_hour_utc=int(os.getenv("SCHEDULE_HOUR_UTC", "2")),
        schedule_minute_utc=int(os.getenv("SCHEDULE_MINUTE_UTC", "0")),
    )
