"""Pytest configuration and fixtures."""

import json
import os
from datetime import timedelta

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import nbpipeline.models  # noqa: E402,F401
from nbpipeline.database import Base, utcnow  # noqa: E402
from nbpipeline.models.company import Company  # noqa: E402
from nbpipeline.models.nb_result import NBResult  # noqa: E402
from nbpipeline.models.run import Run  # noqa: E402
from nbpipeline.services.cost_service import CostEstimate  # noqa: E402
from nbpipeline.services.nb_codes import ALL_NBS  # noqa: E402


@pytest.fixture(scope="function")
def test_db():
    """Create a test database for each test."""
    # Use in-memory SQLite for testing
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    yield db

    db.close()
    engine.dispose()


def nb_payload(code, urls):
    return json.dumps({"summary": f"{code} findings", "citations": [{"url": url} for url in urls]})


@pytest.fixture
def make_company(test_db):
    """Factory for persisted companies."""

    def _make(name="Acme Corp", **kwargs):
        company = Company(name=name, **kwargs)
        test_db.add(company)
        test_db.commit()
        return company

    return _make


@pytest.fixture
def make_run(test_db):
    """Factory for persisted runs, optionally with NB results.

    ``codes`` lists the NB codes to store (defaults to all 15 when
    ``blocks`` is True).
    """

    def _make(
        company_id,
        target_company_id=None,
        status="completed",
        age_days=0,
        blocks=False,
        codes=None,
        block_status="completed",
        tokens=100,
        **kwargs,
    ):
        kwargs.setdefault("created_at", utcnow() - timedelta(days=age_days))
        run = Run(
            company_id=company_id,
            target_company_id=target_company_id,
            user_id=1,
            status=status,
            **kwargs,
        )
        test_db.add(run)
        test_db.flush()

        if codes is None and blocks:
            codes = ALL_NBS
        for code in codes or []:
            test_db.add(
                NBResult(
                    run_id=run.id,
                    nb_code=code,
                    status=block_status,
                    payload=nb_payload(code, [f"https://www.{code.lower()}.example.com/a"]),
                    citations=json.dumps([f"https://{code.lower()}.example.com/a"]),
                    tokens_used=tokens,
                    duration_ms=1000,
                )
            )
        test_db.commit()
        return run

    return _make


class FakeCostEstimator:
    """Cost estimator returning a fixed estimate."""

    def __init__(self, total_cost=2.5, total_tokens=40000, can_proceed=True, reused_snapshot_id=None):
        self.result = CostEstimate(
            can_proceed=can_proceed,
            total_cost=total_cost,
            total_tokens=total_tokens,
            provider="gpt-4",
            limit=50.0,
            reused_snapshot_id=reused_snapshot_id,
        )
        self.telemetry = []
        self.actuals = []

    def estimate(self, company_id, target_company_id=None, force_refresh=False):
        return self.result

    def record_telemetry(self, run_id, key, value, context=None):
        self.telemetry.append((run_id, key, value, context))

    def record_actuals(self, run_id, tokens, cost, breakdown):
        self.actuals.append((run_id, tokens, cost, breakdown))

    def token_cost(self, tokens):
        return tokens / 1000 * 0.06


class FakeGenerator:
    """Generation provider that writes NB results into the session.

    ``outcome`` is True/False for the reported result, or an exception
    instance to raise.
    """

    def __init__(self, db, outcome=True, tokens_per_nb=500, codes=ALL_NBS):
        self.db = db
        self.codes = codes
        self.outcome = outcome
        self.tokens_per_nb = tokens_per_nb
        self.calls = []

    def execute_protocol(self, run_id):
        self.calls.append(run_id)
        if isinstance(self.outcome, Exception):
            raise self.outcome

        for code in self.codes:
            self.db.add(
                NBResult(
                    run_id=run_id,
                    nb_code=code,
                    status="completed",
                    payload=nb_payload(code, [f"https://{code.lower()}.example.org/x"]),
                    tokens_used=self.tokens_per_nb,
                    duration_ms=200,
                )
            )
        self.db.commit()
        return self.outcome


class FakeScheduler:
    """Records scheduled tasks instead of persisting jobs."""

    def __init__(self):
        self.scheduled = []

    def schedule(self, task, run_id=None, run_at=None, **payload):
        self.scheduled.append({"task": task, "run_id": run_id, "run_at": run_at, **payload})


@pytest.fixture
def cost_estimator():
    return FakeCostEstimator()


@pytest.fixture
def generator(test_db):
    return FakeGenerator(test_db)


@pytest.fixture
def scheduler():
    return FakeScheduler()
