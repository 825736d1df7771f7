"""
Content exchange protocol between a crawl session and a renderer process.

Every frame is a JSON object with a ``type`` discriminator. Inbound frames
(what the crawl backend receives) and backend frames (what the renderer
receives) are validated with pydantic; outbound frames are built with the
small helper functions below so both sides agree on the wire shape.

Static resources travel base64-encoded because JSON has no byte strings.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import time
from contextlib import suppress
from typing import Annotated, Any, Awaitable, Callable, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from site_snap.crawler.models import PageRecord

logger = logging.getLogger("SiteSnap")

__all__ = [
    "ProtocolError",
    "StartCrawl",
    "RequestContent",
    "Ping",
    "Pong",
    "LinkEvent",
    "ProcessedContent",
    "ContentPayload",
    "CrawlingComplete",
    "ErrorEvent",
    "InfoEvent",
    "parse_inbound",
    "parse_backend",
    "link_message",
    "processed_content_message",
    "crawling_complete_message",
    "error_message",
    "info_message",
    "ping_message",
    "pong_message",
    "start_crawl_message",
    "request_content_message",
    "encode_resources",
    "decode_resources",
    "Heartbeat",
]


class ProtocolError(ValueError):
    """Malformed frame or unknown ``type``; reported back, never fatal."""


class _Frame(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


# --------------------------------------------------------------------------- #
# Frames received by the crawl backend                                        #
# --------------------------------------------------------------------------- #


class StartCrawl(_Frame):
    type: Literal["start_crawl"]
    url: str = Field(..., min_length=1)


class RequestContent(_Frame):
    type: Literal["request_content"]
    url: str = Field(..., min_length=1)


class Ping(_Frame):
    type: Literal["ping"]
    timestamp: Optional[int] = None


class Pong(_Frame):
    type: Literal["pong"]
    timestamp: Optional[int] = None


InboundFrame = Annotated[
    Union[StartCrawl, RequestContent, Ping, Pong], Field(discriminator="type")
]

# --------------------------------------------------------------------------- #
# Frames received by the renderer                                             #
# --------------------------------------------------------------------------- #


class ContentPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    url: str
    html: str
    resources: Dict[str, str] = Field(default_factory=dict)


class LinkEvent(_Frame):
    type: Literal["link"]
    data: str


class ProcessedContent(_Frame):
    type: Literal["processed_content"]
    data: ContentPayload


class CrawlingComplete(_Frame):
    type: Literal["crawling_complete"]
    data: None = None


class ErrorEvent(_Frame):
    type: Literal["error"]
    data: str
    url: Optional[str] = None


class InfoEvent(_Frame):
    type: Literal["info"]
    data: str


BackendFrame = Annotated[
    Union[LinkEvent, ProcessedContent, CrawlingComplete, ErrorEvent, InfoEvent, Ping, Pong],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter[Any] = TypeAdapter(InboundFrame)
_backend_adapter: TypeAdapter[Any] = TypeAdapter(BackendFrame)


def _decode(raw: Union[str, bytes]) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProtocolError(f"Malformed message: {exc}") from exc
    if not isinstance(data, dict):
        raise ProtocolError(f"Message must be a JSON object, got {type(data).__name__}")
    if "type" not in data:
        raise ProtocolError("Message has no 'type'")
    return data


def _validate(adapter: TypeAdapter[Any], data: dict[str, Any]) -> Any:
    try:
        return adapter.validate_python(data)
    except ValidationError as exc:
        errors = exc.errors()
        if errors and errors[0].get("type") == "union_tag_invalid":
            raise ProtocolError(f"Unknown message type: {data.get('type')!r}") from exc
        raise ProtocolError(f"Invalid {data.get('type')!r} message: {errors[0]['msg'] if errors else exc}") from exc


def parse_inbound(raw: Union[str, bytes]) -> Union[StartCrawl, RequestContent, Ping, Pong]:
    """Decode a frame sent to the crawl backend. Raises ProtocolError."""
    return _validate(_inbound_adapter, _decode(raw))


def parse_backend(raw: Union[str, bytes]) -> Any:
    """Decode a frame sent by the crawl backend to a renderer. Raises ProtocolError."""
    return _validate(_backend_adapter, _decode(raw))


# --------------------------------------------------------------------------- #
# Frame builders                                                              #
# --------------------------------------------------------------------------- #


def encode_resources(resources: Dict[str, bytes]) -> Dict[str, str]:
    return {url: base64.b64encode(body).decode("ascii") for url, body in resources.items()}


def decode_resources(resources: Dict[str, str]) -> Dict[str, bytes]:
    """Inverse of :func:`encode_resources`; undecodable entries are dropped."""
    out: Dict[str, bytes] = {}
    for url, body in resources.items():
        try:
            out[url] = base64.b64decode(body, validate=True)
        except (binascii.Error, ValueError):
            logger.debug("Dropping undecodable resource %s", url)
    return out


def link_message(url: str) -> dict[str, Any]:
    return {"type": "link", "data": url}


def processed_content_message(record: PageRecord) -> dict[str, Any]:
    return {
        "type": "processed_content",
        "data": {
            "url": record.url,
            "html": record.sanitized_html,
            "resources": encode_resources(record.resources),
        },
    }


def crawling_complete_message() -> dict[str, Any]:
    return {"type": "crawling_complete", "data": None}


def error_message(message: str, url: Optional[str] = None) -> dict[str, Any]:
    frame: dict[str, Any] = {"type": "error", "data": message}
    if url is not None:
        frame["url"] = url
    return frame


def info_message(message: str) -> dict[str, Any]:
    return {"type": "info", "data": message}


def ping_message() -> dict[str, Any]:
    return {"type": "ping", "timestamp": int(time.time() * 1000)}


def pong_message() -> dict[str, Any]:
    return {"type": "pong", "timestamp": int(time.time() * 1000)}


def start_crawl_message(url: str) -> dict[str, Any]:
    return {"type": "start_crawl", "url": url}


def request_content_message(url: str) -> dict[str, Any]:
    return {"type": "request_content", "url": url}


# --------------------------------------------------------------------------- #
# Liveness                                                                    #
# --------------------------------------------------------------------------- #


class Heartbeat:
    """Periodic ``ping``; calls *on_timeout* once if a ``pong`` is late.

    :meth:`pong` must be called by the owner whenever a ``pong`` frame comes
    in. The loop stops after the first timeout; the owner is expected to
    close the connection from *on_timeout*.
    """

    def __init__(
        self,
        send_ping: Callable[[dict[str, Any]], Awaitable[None]],
        on_timeout: Callable[[], Awaitable[None]],
        interval: float,
        timeout: float,
    ) -> None:
        self.interval = interval
        self.timeout = timeout
        self._send_ping = send_ping
        self._on_timeout = on_timeout
        self._pong = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self.timed_out = False

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="heartbeat")

    def pong(self) -> None:
        self._pong.set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        if self.timed_out:
            # on_timeout is closing the connection; let the close handshake finish
            await task
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self._pong.clear()
            try:
                await self._send_ping(ping_message())
            except ConnectionError as exc:
                # the socket went away between ticks; the reader side closes it
                logger.debug("Heartbeat stopped, ping not sent: %s", exc)
                return
            try:
                await asyncio.wait_for(self._pong.wait(), timeout=self.timeout)
            except asyncio.TimeoutError:
                self.timed_out = True
                logger.warning("No pong within %.1f s, closing connection", self.timeout)
                await self._on_timeout()
                return
