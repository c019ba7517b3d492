"""配置模块：负责加载和缓存基于环境变量的应用设置。

环境文件加载顺序：
- 设置了 ``ENV_FILE`` 时只加载该文件；
- 否则先加载 ``.env``（不覆盖已有环境变量），再按 ``ENVIRONMENT`` 加载 ``.env.<环境名>``
  （``DEBUG`` 为真且未指定环境时视为 ``development``）。
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Iterator, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import make_url


def _detect_base_dir() -> Path:
    """向上查找包含 ``app`` 目录的项目根路径，找不到时退回当前文件所在目录。"""
    here = Path(__file__).resolve()
    return next((parent for parent in here.parents if (parent / "app").is_dir()), here.parent)


BASE_DIR = _detect_base_dir()


def _as_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def _env_files() -> Iterator[tuple[Path, bool]]:
    """依次给出待加载的环境文件及是否覆盖已有变量。

    ``.env`` 加载后才读取 ``ENVIRONMENT``，因此环境名也可以写在 ``.env`` 中。
    """
    override = os.getenv("ENV_FILE")
    if override:
        yield BASE_DIR / override, True
        return

    yield BASE_DIR / ".env", False
    environment = os.getenv("ENVIRONMENT") or ("development" if _as_bool(os.getenv("DEBUG")) else None)
    if environment:
        name = environment if environment.startswith(".env") else f".env.{environment}"
        yield BASE_DIR / name, True


for _path, _override in _env_files():
    if _path.exists():
        load_dotenv(_path, override=_override, encoding="utf-8")


class Settings(BaseSettings):
    """
    封装应用运行所需的所有配置项，每个字段都可以通过环境变量重写。
    该类支持被 FastAPI 及其它模块直接注入使用，避免在代码中散落魔法字符串。
    """

    project_name: str = Field(default="File Manager API", alias="PROJECT_NAME")
    api_prefix: str = Field(default="/api", alias="API_PREFIX")
    debug: bool = Field(default=False, alias="DEBUG")

    database_url: str = Field(default="sqlite:///data/filemanager.db", alias="DATABASE_URL")
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # 文件内容存储：LOCAL 为本地目录，S3 为对象存储
    blob_backend: str = Field(default="LOCAL", alias="BLOB_BACKEND")
    blob_storage_dir: str = Field(default="uploads", alias="BLOB_STORAGE_DIR")
    s3_bucket: Optional[str] = Field(default=None, alias="S3_BUCKET")
    s3_region: Optional[str] = Field(default=None, alias="S3_REGION")
    s3_prefix: Optional[str] = Field(default=None, alias="S3_PREFIX")
    s3_endpoint_url: Optional[str] = Field(default=None, alias="S3_ENDPOINT_URL")
    s3_access_key_id: Optional[str] = Field(default=None, alias="S3_ACCESS_KEY_ID")
    s3_secret_access_key: Optional[str] = Field(default=None, alias="S3_SECRET_ACCESS_KEY")

    # 上传限制
    max_upload_files: int = Field(default=10, alias="MAX_UPLOAD_FILES")
    max_upload_size: int = Field(default=100 * 1024 * 1024, alias="MAX_UPLOAD_SIZE")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: str = Field(default="log", alias="LOG_DIR")
    log_file_name: str = Field(default="app.log", alias="LOG_FILE_NAME")
    log_json: bool = Field(default=False, alias="LOG_JSON")
    app_port: int = Field(default=8000, alias="APP_PORT")
    timezone: str = Field(default="UTC", alias="TIMEZONE")

    model_config = SettingsConfigDict(extra="ignore")

    def _resolve_path(self, raw: str) -> Path:
        path = Path(raw)
        if not path.is_absolute():
            path = BASE_DIR / path
        return path

    @property
    def sql_database_url(self) -> str:
        """返回 SQLAlchemy 连接串；SQLite 的相对路径统一按项目根目录解析。"""
        url = make_url(self.database_url)
        if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
            db_path = self._resolve_path(url.database)
            db_path.parent.mkdir(parents=True, exist_ok=True)
            url = url.set(database=str(db_path))
        return url.render_as_string(hide_password=False)

    @property
    def blob_directory(self) -> Path:
        """返回本地文件内容目录的绝对路径。"""
        return self._resolve_path(self.blob_storage_dir)

    @property
    def log_directory(self) -> Path:
        """返回日志目录的绝对路径，支持相对路径配置。"""
        return self._resolve_path(self.log_dir)

    @property
    def log_file_path(self) -> Path:
        """组合日志目录与文件名，得到完整的日志文件路径。"""
        return self.log_directory / self.log_file_name

    @property
    def timezone_info(self) -> ZoneInfo:
        """返回当前配置对应的时区信息，无法解析时回退到 UTC。"""
        try:
            return ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError:
            return ZoneInfo("UTC")


@lru_cache
def get_settings() -> Settings:
    """返回单例化的配置对象，避免重复解析环境变量造成性能浪费。"""
    return Settings()
