"""Shared test fixtures for sktasks."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from typing import Callable, Optional

import pytest

from sktasks.identity import ExecutionContext, Identity
from sktasks.sync.backends import LocalRemoteStore
from sktasks.sync.engine import SyncEngine
from sktasks.sync.store import RecordStore
from sktasks.tasks import TaskService


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """Provide a temporary sktasks home directory."""
    path = tmp_path / ".sktasks"
    path.mkdir()
    return path


@pytest.fixture
def alice() -> Identity:
    return Identity(b"\x01" * 32, name="alice")


@pytest.fixture
def bob() -> Identity:
    return Identity(b"\x02" * 32, name="bob")


@pytest.fixture
def agent() -> Identity:
    return Identity(b"\x03" * 32, name="agent")


@pytest.fixture
def alice_ctx(alice: Identity) -> ExecutionContext:
    return ExecutionContext(alice, device_id="alice-laptop")


@pytest.fixture
def bob_ctx(bob: Identity) -> ExecutionContext:
    return ExecutionContext(bob, device_id="bob-phone")


@pytest.fixture
def remote_dir(tmp_path: Path) -> Path:
    """Shared ledger directory every device syncs against."""
    return tmp_path / "remote"


@pytest.fixture
def make_device(tmp_path: Path, remote_dir: Path) -> Callable[..., SimpleNamespace]:
    """Factory for a device: identity + own store + shared local remote."""

    def _make(name: str, identity: Identity, device_id: Optional[str] = None) -> SimpleNamespace:
        device_home = tmp_path / name
        ctx = ExecutionContext(identity, device_id=device_id or name)
        store = RecordStore(device_home)
        remote = LocalRemoteStore(ctx, remote_dir)
        engine = SyncEngine(ctx, store, remote, home=device_home)
        return SimpleNamespace(
            home=device_home,
            ctx=ctx,
            store=store,
            remote=remote,
            engine=engine,
            tasks=TaskService(ctx, store),
        )

    return _make
