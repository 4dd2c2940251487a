import pathlib
import sys
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tender_review.main import create_app
from tender_review.store import store
from tender_review.structuring_client import PollResult, SubmitResult

_PIPELINE_ENV = (
    "TP_MOCK_EXTRACT",
    "TP_MOCK_AI",
    "TP_SPLIT_STAGES",
    "TP_MAX_USD_PER_JOB",
    "PIPELINE_SHARED_SECRET",
    "OPENAI_API_KEY",
    "TP_OPENAI_API_KEY",
    "UNSTRUCTURED_API_KEY",
    "TP_UNSTRUCTURED_API_KEY",
)


@pytest.fixture(autouse=True)
def reset_store(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TP_OBJECT_STORAGE_BACKEND", "local")
    monkeypatch.setenv("OBJECT_STORAGE_ROOT", str(tmp_path / "object_store"))
    for name in _PIPELINE_ENV:
        monkeypatch.delenv(name, raising=False)
    store.reset()
    yield


@pytest.fixture
def client() -> TestClient:
    return TestClient(create_app())


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, *, seconds: float = 0, minutes: float = 0) -> None:
        self.now = self.now + timedelta(seconds=seconds, minutes=minutes)


class FakeStructuringClient:
    """Counts calls; poll answers are consumed in order, the last one repeats."""

    def __init__(self, *, poll_statuses: list[str] | None = None, elements: list[dict] | None = None) -> None:
        self.poll_statuses = list(poll_statuses or ["succeeded"])
        self.elements = elements if elements is not None else []
        self.submit_calls = 0
        self.poll_calls = 0
        self.download_calls = 0

    @property
    def total_calls(self) -> int:
        return self.submit_calls + self.poll_calls + self.download_calls

    def submit(self, *, file_bytes: bytes, filename: str, content_type: str) -> SubmitResult:
        self.submit_calls += 1
        return SubmitResult(job_id=f"ext_{self.submit_calls}", file_id="file_1")

    def poll(self, *, job_id: str) -> PollResult:
        self.poll_calls += 1
        status = self.poll_statuses.pop(0) if len(self.poll_statuses) > 1 else self.poll_statuses[0]
        return PollResult(status=status, file_id="file_1", detail="upstream said no" if status == "failed" else "")

    def download(self, *, job_id: str, file_id: str) -> list[dict]:
        self.download_calls += 1
        return list(self.elements)


class FakeUsage:
    def as_dict(self) -> dict:
        return {"model": "fake", "total_tokens": 0}


class FakeReviewer:
    def __init__(self, review: dict | None = None, *, error: Exception | None = None) -> None:
        self.review = review
        self.error = error
        self.calls: list[dict] = []

    def __call__(self, *, source_text, candidates, max_output_tokens):
        self.calls.append({"source_text": source_text, "candidates": list(candidates)})
        if self.error is not None:
            raise self.error
        return self.review, FakeUsage()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
