"""Shared test fixtures."""
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from powerchain.connectors.base import ConnectionTestResult, Connector, ConnectorError
from powerchain.core.cascade_engine import CascadeEngine
from powerchain.core.state_machine import NodeStatus
from powerchain.db.models import Base, Cascade, DependencyLink, Node


class RecordingBroadcaster:
    """Broadcast sink that keeps every event in memory."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    async def broadcast(self, event: str, data: dict) -> None:
        self.events.append((event, data))

    def named(self, event: str) -> list[dict]:
        return [data for name, data in self.events if name == event]


class FakeConnector(Connector):
    """In-memory connector whose status flips when started or stopped.

    ``responsive=False`` makes start/stop succeed without ever changing the
    reported status, which is how step timeouts are exercised.
    """

    platform = "fake"

    def __init__(
        self,
        status: NodeStatus = NodeStatus.OFFLINE,
        up: NodeStatus = NodeStatus.ONLINE,
        down: NodeStatus = NodeStatus.OFFLINE,
        responsive: bool = True,
        start_error: ConnectorError | None = None,
        stop_error: ConnectorError | None = None,
        journal: list | None = None,
        name: str = "",
    ):
        self.status = status
        self.up = up
        self.down = down
        self.responsive = responsive
        self.start_error = start_error
        self.stop_error = stop_error
        self.journal = journal if journal is not None else []
        self.name = name
        self.start_calls = 0
        self.stop_calls = 0
        self.stats = None

    async def test_connection(self) -> ConnectionTestResult:
        return ConnectionTestResult(True, f"{self.name} reachable")

    async def start(self) -> None:
        self.start_calls += 1
        self.journal.append(("start", self.name))
        if self.start_error:
            raise self.start_error
        if self.responsive:
            self.status = self.up

    async def stop(self) -> None:
        self.stop_calls += 1
        self.journal.append(("stop", self.name))
        if self.stop_error:
            raise self.stop_error
        if self.responsive:
            self.status = self.down

    async def get_status(self) -> NodeStatus:
        return self.status

    async def get_stats(self):
        return self.stats


class Fleet:
    """Maps node ids to fake connectors; doubles as the engine's resolver."""

    def __init__(self):
        self.connectors: dict[str, Connector] = {}
        self.journal: list[tuple[str, str]] = []
        self.errors: dict[str, ConnectorError] = {}

    def add(self, node: Node, **kwargs) -> FakeConnector:
        connector = FakeConnector(journal=self.journal, name=node.name, **kwargs)
        self.connectors[node.id] = connector
        return connector

    async def resolve(self, db, node_id: str) -> Connector | None:
        if node_id in self.errors:
            raise self.errors[node_id]
        return self.connectors.get(node_id)


@pytest.fixture
async def db_engine(tmp_path):
    """File-backed database so background sessions get their own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'powerchain.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def fleet():
    return Fleet()


@pytest.fixture
def add_node(db):
    """Insert a node, plus its structural link when a parent is given."""

    async def _add(name, kind="physical", status="offline", parent=None, **kwargs):
        node = Node(
            name=name,
            kind=kind,
            status=status,
            parent_id=parent.id if parent else None,
            **kwargs,
        )
        db.add(node)
        await db.flush()
        if parent is not None:
            db.add(
                DependencyLink(parent_id=parent.id, child_id=node.id, is_structural=True)
            )
        await db.commit()
        return node

    return _add


@pytest.fixture
def add_link(db):
    """Insert a logical dependency: ``child`` needs ``parent``."""

    async def _link(parent, child):
        link = DependencyLink(parent_id=parent.id, child_id=child.id, is_structural=False)
        db.add(link)
        await db.commit()
        return link

    return _link


@pytest.fixture
def read_node(session_factory):
    """Load a node from a fresh session to see what cascades persisted."""

    async def _read(node_id):
        async with session_factory() as session:
            return await session.get(Node, node_id)

    return _read


@pytest.fixture
async def client(session_factory):
    """API client with the database dependency overridden."""
    from powerchain.db.database import get_db
    from powerchain.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def engine(session_factory, broadcaster, fleet):
    """Cascade engine wired to the fake fleet with short step timeouts."""
    return CascadeEngine(
        session_factory=session_factory,
        broadcaster=broadcaster,
        resolver=fleet.resolve,
        step_timeout=0.05,
        poll_interval=0.01,
    )


@pytest.fixture
def run_cascade(db, engine, session_factory):
    """Create, launch and wait for a cascade; returns the persisted row."""

    async def _run(node, cascade_type):
        cascade = await engine.create_cascade(db, node.id, cascade_type)
        await db.commit()
        engine.launch(cascade)
        await engine.wait_idle()
        async with session_factory() as session:
            return await session.get(Cascade, cascade.id)

    return _run
