from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Almacén temporal
    TEMP_DIR: Path = Field(default=Path("./temp"))
    RETENTION_SECS: int = 3600  # 1 h: edad máxima de un fichero en TEMP_DIR
    SWEEP_EVERY_SECS: int = 1800  # cada cuánto corre el barrido por antigüedad

    # Ciclo de vida de los jobs
    SETTLE_DELAY_SECS: float = 0.5  # pausa tras salir yt-dlp antes de mirar el disco
    JOB_MAX_RUN_SECS: int = 3600  # 0 = sin límite

    # Progreso (SSE)
    PROGRESS_INTERVAL_SECS: float = 0.5
    PROGRESS_UNKNOWN_GRACE_SECS: float = 30.0

    # ==== yt-dlp ====
    YTDLP_BIN: str | None = None  # None → autodetección (venv, luego PATH)
    COOKIES_FILE: Path = Field(default=Path("./cookies.txt"))  # formato Netscape
    COOKIE_PLATFORMS: list[str] = Field(default_factory=lambda: ["instagram", "tiktok"])
    TITLE_MAX_LEN: int = 50

    # API
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 3001
    CORS_ORIGINS: list[str] = Field(default_factory=lambda: ["*"])

    LOG_LEVEL: str = "INFO"
    LOG_DIR: Path | None = Field(default=Path("./logs"))  # None → sólo consola
    LOG_FILE: str = "mfdl.log"


settings = Settings()
