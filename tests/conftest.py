from __future__ import annotations

import io
import os
import tempfile

import fitz
import pytest
from PIL import Image


os.environ.setdefault("AUTH_TOKEN", "test-token")
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="flatten-service-tests-"))
os.environ.setdefault("STORAGE_BACKEND", "local")


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.t = start

    def now(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class MemoryStore:
    requires_auth = True

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.fail_delete = False
        self.fail_locator = False

    async def save(self, artifact_id: str, data: bytes) -> None:
        self.objects[artifact_id] = data

    async def delete(self, artifact_id: str) -> None:
        self.deleted.append(artifact_id)
        if self.fail_delete:
            raise OSError("backend unavailable")
        self.objects.pop(artifact_id, None)

    async def locator(self, artifact_id: str, *, base_url: str, expires_at: float) -> str:
        if self.fail_locator:
            raise RuntimeError("signing failed")
        return f"{base_url.rstrip('/')}/downloads/{artifact_id}"

    async def sweep(self) -> int:
        count = len(self.objects)
        self.objects.clear()
        return count


def build_pdf(widths: list[float], height: float = 800) -> bytes:
    """A PDF whose pages have the given widths, each labelled with its number."""
    doc = fitz.open()
    try:
        for i, width in enumerate(widths, start=1):
            page = doc.new_page(width=width, height=height)
            page.insert_text((20, 40), f"Page {i}", fontsize=18)
        return doc.tobytes()
    finally:
        doc.close()


def build_png(width: int, height: int, color: tuple[int, int, int] = (200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def make_pdf():
    return build_pdf


@pytest.fixture
def make_png():
    return build_png
