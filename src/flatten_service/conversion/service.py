import asyncio
import logging
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

from .errors import ConversionError, UploadTooLargeError
from .expiry import DelayedTaskScheduler, ExpirationRegistry
from .interfaces import ArtifactStore, AssemblerGateway, Clock, ImageEncoderGateway, RasterizerGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversionResult:
    artifact_id: str
    download_url: str
    time_remaining_url: str
    expires_at: float
    page_count: int


def new_artifact_id(now: float | None = None) -> str:
    """Creation time in ms plus a random suffix, unique across concurrent jobs."""
    ms = int((time.time() if now is None else now) * 1000)
    return f"converted_{ms}_{uuid.uuid4().hex[:12]}.pdf"


class ConversionService:
    """Core domain service turning an uploaded PDF into an image-only PDF.

    Framework-agnostic: HTTP handlers call ``save_upload`` and ``convert``;
    gateways do the rasterizing, encoding, assembling and storage. Every
    produced artifact is registered with the expiration registry and reaped
    once its TTL elapses.
    """

    def __init__(
        self,
        rasterizer: RasterizerGateway,
        encoder: ImageEncoderGateway,
        assembler: AssemblerGateway,
        store: ArtifactStore,
        clock: Clock,
        *,
        data_dir: str,
        ttl_seconds: float = 300,
        raster_scale: int = 2000,
        fit_box: tuple[int, int] = (2480, 3508),
        page_size: tuple[float, float] = (612, 792),
        placement: str = "natural",
        scheduler: DelayedTaskScheduler | None = None,
        registry: ExpirationRegistry | None = None,
    ) -> None:
        self._rasterizer = rasterizer
        self._encoder = encoder
        self._assembler = assembler
        self._store = store
        self._clock = clock
        self._data_dir = Path(data_dir).resolve()
        self._ttl = ttl_seconds
        self._raster_scale = raster_scale
        self._fit_box = fit_box
        self._page_size = page_size
        self._placement = placement
        self.scheduler = scheduler or DelayedTaskScheduler(clock)
        self.registry = registry or ExpirationRegistry(store, clock, self.scheduler)

    @property
    def store(self) -> ArtifactStore:
        return self._store

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @property
    def uploads_dir(self) -> Path:
        return self._data_dir / "uploads"

    @property
    def work_dir(self) -> Path:
        return self._data_dir / "work"

    async def start(self) -> None:
        for d in (self.uploads_dir, self.work_dir):
            d.mkdir(parents=True, exist_ok=True)
        # Nothing from a previous process is registered, so none of it can be served or reaped.
        swept = await self._store.sweep()
        stale = await asyncio.to_thread(self._clear_dir, self.work_dir)
        stale += await asyncio.to_thread(self._clear_dir, self.uploads_dir)
        if swept or stale:
            logger.info("Startup sweep removed %d artifacts and %d working entries", swept, stale)
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()

    @staticmethod
    def _clear_dir(path: Path) -> int:
        removed = 0
        for child in path.iterdir():
            if child.is_dir():
                shutil.rmtree(child, ignore_errors=True)
            else:
                child.unlink(missing_ok=True)
            removed += 1
        return removed

    # API used by HTTP controller to persist an upload stream
    async def save_upload(
        self,
        filename: str,
        reader: Callable[[int], Awaitable[bytes]],
        *,
        max_upload_mb: int,
    ) -> Path:
        """Stream an upload to disk under a fresh name and return its path."""
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        input_path = self.uploads_dir / f"{uuid.uuid4()}.pdf"

        size_bytes = 0
        CHUNK = 1024 * 1024
        max_bytes = max_upload_mb * 1024 * 1024
        try:
            with input_path.open("wb") as f_out:
                while True:
                    chunk = await reader(CHUNK)
                    if not chunk:
                        break
                    size_bytes += len(chunk)
                    if size_bytes > max_bytes:
                        break
                    f_out.write(chunk)
        except BaseException:
            # Client went away mid-stream; drop the partial file.
            input_path.unlink(missing_ok=True)
            raise
        if size_bytes > max_bytes:
            input_path.unlink(missing_ok=True)
            raise UploadTooLargeError(f"upload {filename!r} exceeds {max_upload_mb} MB")
        return input_path

    async def convert(self, upload_path: Path, *, base_url: str) -> ConversionResult:
        """Run rasterize -> encode -> assemble -> persist -> register for one upload.

        On any failure nothing is persisted or registered and ConversionError
        is raised. The upload itself is removed as soon as rasterization ends.
        """
        artifact_id = new_artifact_id(self._clock.now())
        job_dir = self.work_dir / Path(artifact_id).stem
        persisted = False
        try:
            pages = await self._rasterize(upload_path)
            paths = await asyncio.to_thread(self._write_pages, job_dir, pages)
            encoded = await asyncio.gather(*(self._encode(p) for p in paths))
            pdf_bytes = await asyncio.to_thread(
                self._assembler.assemble, list(encoded), self._page_size, self._placement
            )

            await self._store.save(artifact_id, pdf_bytes)
            persisted = True
            expires_at = self._clock.now() + self._ttl
            download_url = await self._store.locator(artifact_id, base_url=base_url, expires_at=expires_at)
            self.registry.register_until(artifact_id, expires_at, work_dir=job_dir)
        except Exception as e:
            logger.exception("Conversion of %s failed", upload_path.name)
            await self._discard(artifact_id, job_dir, persisted)
            if isinstance(e, ConversionError):
                raise
            raise ConversionError(str(e)) from e

        logger.info("Converted %s into %s (%d pages)", upload_path.name, artifact_id, len(pages))
        return ConversionResult(
            artifact_id=artifact_id,
            download_url=download_url,
            time_remaining_url=f"{base_url.rstrip('/')}/time-remaining/{artifact_id}",
            expires_at=expires_at,
            page_count=len(pages),
        )

    def time_remaining(self, artifact_id: str) -> float:
        return self.registry.time_remaining(artifact_id)

    async def _rasterize(self, upload_path: Path) -> list[bytes]:
        try:
            data = await asyncio.to_thread(upload_path.read_bytes)
            pages = await asyncio.to_thread(self._rasterizer.rasterize, data, self._raster_scale)
        finally:
            # Unconverted uploads are never retained.
            await asyncio.to_thread(upload_path.unlink, missing_ok=True)
        if not pages:
            raise ConversionError("document has no pages")
        return pages

    @staticmethod
    def _write_pages(job_dir: Path, pages: list[bytes]) -> list[Path]:
        job_dir.mkdir(parents=True, exist_ok=True)
        paths = []
        for i, png in enumerate(pages, start=1):
            p = job_dir / f"page-{i:04d}.png"
            p.write_bytes(png)
            paths.append(p)
        return paths

    async def _encode(self, path: Path) -> bytes:
        data = await asyncio.to_thread(path.read_bytes)
        return await asyncio.to_thread(self._encoder.fit_inside, data, self._fit_box)

    async def _discard(self, artifact_id: str, job_dir: Path, persisted: bool) -> None:
        await asyncio.to_thread(shutil.rmtree, job_dir, ignore_errors=True)
        if persisted:
            try:
                await self._store.delete(artifact_id)
            except Exception as e:
                logger.warning("Failed to delete partial artifact %s: %s", artifact_id, e)
