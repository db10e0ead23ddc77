from __future__ import annotations

import asyncio
from typing import Any

import pytest

from sopdesk.client import SourceFile, Store, UploadReceipt
from sopdesk.errors import TransportError
from sopdesk.operations import OperationHandle, OperationStatus
from sopdesk.realtime import ServerEvent


class FakeBackend:
    """In-memory stand-in for the backend client used by upload flows."""

    def __init__(self, stores: list[Store] | None = None, *, fail_on: set[str] | None = None) -> None:
        self.stores: list[Store] = list(stores or [])
        self.fail_on = set(fail_on or ())
        self.uploads: list[tuple[str, str, Any]] = []
        self.created: list[str] = []
        self.operation_checks: list[str] = []

    async def list_stores(self) -> list[Store]:
        return list(self.stores)

    async def create_store(self, display_name: str) -> Store:
        store = Store(name=f"fileSearchStores/{display_name}-{len(self.stores) + 1}", display_name=display_name)
        self.stores.append(store)
        self.created.append(display_name)
        return store

    async def upload_document(self, store, file: SourceFile, metadata=None) -> UploadReceipt:
        store_name = store.name if isinstance(store, Store) else store
        self.uploads.append((store_name, file.name, metadata))
        if file.name in self.fail_on:
            raise TransportError(f"Upload rejected for {file.name}", status_code=500)
        return UploadReceipt(
            message="Upload started",
            status="processing",
            operation=OperationHandle(f"operations/{file.name}"),
        )

    async def get_operation(self, handle: OperationHandle) -> OperationStatus:
        self.operation_checks.append(handle.name)
        return OperationStatus(name=handle.name, done=True, response={"ok": True})


class ImmediateWaiter:
    def __init__(self) -> None:
        self.waited: list[str] = []

    async def wait(self, handle: OperationHandle) -> Any:
        self.waited.append(handle.name)
        return {"ok": True}


class FakeSource:
    def __init__(self, start_time: float, duration: float) -> None:
        self.start_time = start_time
        self.duration = duration
        self.stopped = False
        self._callbacks: list = []

    def add_done_callback(self, callback) -> None:
        self._callbacks.append(callback)

    def stop(self) -> None:
        self.stopped = True
        self.finish()

    def finish(self) -> None:
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)


class FakePlayback:
    """Playback device whose clock only moves when a test says so."""

    def __init__(self, now: float = 0.0) -> None:
        self.now = now
        self.played: list[tuple[Any, float]] = []
        self.sources: list[FakeSource] = []
        self.closed = False

    @property
    def current_time(self) -> float:
        return self.now

    def play(self, buffer, when: float) -> FakeSource:
        self.played.append((buffer, when))
        source = FakeSource(when, buffer.duration)
        self.sources.append(source)
        return source

    def close(self) -> None:
        self.closed = True


class FakeCapture:
    def __init__(self) -> None:
        self.on_frame = None
        self.stopped = False

    def start(self, on_frame) -> None:
        self.on_frame = on_frame

    def stop(self) -> None:
        self.stopped = True


class FakeChannel:
    """Realtime channel fed from a queue; ``None`` ends the stream and an exception is raised."""

    def __init__(self, *, fail_connect: bool = False) -> None:
        self.fail_connect = fail_connect
        self.connected = False
        self.closed = False
        self.sent: list[dict[str, str]] = []
        self.queue: asyncio.Queue = asyncio.Queue()

    async def connect(self) -> None:
        if self.fail_connect:
            raise ConnectionError("handshake refused")
        self.connected = True

    async def send_audio(self, blob: dict[str, str]) -> None:
        self.sent.append(blob)

    async def events(self):
        while True:
            item = await self.queue.get()
            if item is None:
                return
            if isinstance(item, BaseException):
                raise item
            yield item if isinstance(item, ServerEvent) else ServerEvent.from_message(item)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def waiter() -> ImmediateWaiter:
    return ImmediateWaiter()


@pytest.fixture()
def playback() -> FakePlayback:
    return FakePlayback()


@pytest.fixture()
def capture() -> FakeCapture:
    return FakeCapture()


@pytest.fixture()
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture()
def make_backend():
    return FakeBackend


@pytest.fixture()
def make_channel():
    return FakeChannel
