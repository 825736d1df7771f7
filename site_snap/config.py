"""
Модуль для загрузки и валидации конфигурации SiteSnap.
Используется Pydantic для описания схемы и проверки данных.

Конфиг состоит из трёх секций: ``crawler`` (обход сайта), ``server``
(WebSocket-бэкенд краулера) и ``renderer`` (процесс, делающий скриншоты).
"""
from __future__ import annotations

import errno
import json
import os
from pathlib import Path
from typing import Any, Literal, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36"
)

DEFAULT_CDNS: Tuple[str, ...] = (
    "cdn.jsdelivr.net",
    "cdnjs.cloudflare.com",
    "fonts.googleapis.com",
    "stackpath.bootstrapcdn.com",
    "unpkg.com",
)

QueuePolicy = Literal["strict-fifo", "scan-for-ready"]


class CrawlerConfig(BaseModel):
    """Параметры обхода одного сайта."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_concurrent: int = Field(5, ge=1, description="Максимум одновременных загрузок.")
    timeout: float = Field(10.0, gt=0, description="Таймаут на один запрос (секунд).")
    user_agent: str = Field(BROWSER_USER_AGENT, min_length=1, description="Заголовок User-Agent.")
    retry_times: int = Field(0, ge=0, description="Число повторных попыток при 5xx/429.")
    allowed_cdns: Tuple[str, ...] = Field(DEFAULT_CDNS, description="Разрешённые CDN для ресурсов.")

    @field_validator("allowed_cdns", mode="before")
    def _lower_hosts(cls, v: Any) -> Any:
        if isinstance(v, (list, tuple)):
            return tuple(str(h).strip().lower() for h in v)
        return v


class ServerConfig(BaseModel):
    """Настройки WebSocket-сервера краулера."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    host: str = Field("0.0.0.0", description="Адрес для прослушивания.")
    port: int = Field(8000, ge=1, le=65535, description="Порт бэкенда.")
    heartbeat_interval: float = Field(30.0, gt=0, description="Интервал ping (секунд).")
    heartbeat_timeout: float = Field(10.0, gt=0, description="Ожидание pong после ping (секунд).")


class RendererConfig(BaseModel):
    """Настройки процесса рендеринга скриншотов."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    host: str = Field("0.0.0.0", description="Адрес HTTP-сервиса скриншотов.")
    port: int = Field(3000, ge=1, le=65535, description="Порт HTTP-сервиса скриншотов.")
    backend_url: str = Field("ws://localhost:8000/ws", description="WebSocket-адрес бэкенда.")
    viewport_width: int = Field(1280, ge=1)
    viewport_height: int = Field(720, ge=1)
    render_timeout: float = Field(30.0, gt=0, description="Таймаут рендеринга одной страницы.")
    request_timeout: float = Field(60.0, gt=0, description="Сколько ждать контент и скриншот.")
    queue_policy: QueuePolicy = Field("strict-fifo", description="Политика очереди скриншотов.")
    cache_max_entries: Optional[int] = Field(None, ge=1, description="Лимит кеша (None = без лимита).")
    reconnect_initial_delay: float = Field(1.0, gt=0)
    reconnect_max_delay: float = Field(30.0, gt=0)

    @field_validator("backend_url")
    def _check_ws_scheme(cls, v: str) -> str:
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("backend_url должен начинаться с ws:// или wss://")
        return v


class AppConfig(BaseModel):
    """Полная конфигурация SiteSnap."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    renderer: RendererConfig = Field(default_factory=RendererConfig)


_DEFAULT_CFG = Path("configs/default.yaml")


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"Неправильный YAML в {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise TypeError(f"Верхний уровень YAML должен быть mapping, получено {type(data).__name__}")
    return data


def _read_json(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8")) or {}
    except json.JSONDecodeError as exc:
        raise ValueError(f"Неправильный JSON в {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise TypeError(f"Верхний уровень JSON должен быть mapping, получено {type(data).__name__}")
    return data


def load_config(path: Union[str, Path, None]) -> AppConfig:
    """
    Читает YAML или JSON и возвращает проверенный объект AppConfig.
    Без пути берётся configs/default.yaml, а если его нет, значения по умолчанию.
    Явно указанный, но отсутствующий файл даёт FileNotFoundError.
    """
    if path is None:
        if not _DEFAULT_CFG.exists():
            return AppConfig()
        path_obj = _DEFAULT_CFG
    else:
        path_obj = Path(path).expanduser().resolve()
        if not path_obj.is_file():
            raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), str(path_obj))

    suffix = path_obj.suffix.lower()
    if suffix in (".yaml", ".yml"):
        data = _read_yaml(path_obj)
    elif suffix == ".json":
        data = _read_json(path_obj)
    else:
        raise ValueError(f"Неподдерживаемый формат конфига: {suffix}")

    try:
        return AppConfig(**data)
    except ValidationError:
        raise


__all__ = [
    "AppConfig",
    "CrawlerConfig",
    "ServerConfig",
    "RendererConfig",
    "QueuePolicy",
    "BROWSER_USER_AGENT",
    "DEFAULT_CDNS",
    "load_config",
]
