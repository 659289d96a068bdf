import asyncio
import hmac
import io
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from .errors import ConversionError, NotFoundError
from .interfaces import ArtifactStore, AssemblerGateway, Clock, ImageEncoderGateway, RasterizerGateway, SecurityGateway


class SystemClock(Clock):
    def now(self) -> float:
        return time.time()


class LocalArtifactStore(ArtifactStore):
    """Artifacts as files in one output directory, served by this process."""

    requires_auth = True

    def __init__(self, output_dir: str) -> None:
        self._base = Path(output_dir).resolve()

    @property
    def output_dir(self) -> Path:
        return self._base

    def path(self, artifact_id: str) -> Path:
        # Artifact ids are plain file names; reject anything that resolves elsewhere.
        p = (self._base / artifact_id).resolve()
        if p.parent != self._base:
            raise NotFoundError(f"invalid artifact id {artifact_id!r}")
        return p

    async def save(self, artifact_id: str, data: bytes) -> None:
        p = self.path(artifact_id)

        def write_output() -> None:
            p.parent.mkdir(parents=True, exist_ok=True)
            with p.open("wb") as f:
                f.write(data)

        await asyncio.to_thread(write_output)

    async def delete(self, artifact_id: str) -> None:
        p = self.path(artifact_id)
        await asyncio.to_thread(p.unlink, missing_ok=True)

    async def locator(self, artifact_id: str, *, base_url: str, expires_at: float) -> str:
        return f"{base_url.rstrip('/')}/downloads/{artifact_id}"

    async def sweep(self) -> int:
        def remove_all() -> int:
            if not self._base.exists():
                return 0
            removed = 0
            for child in self._base.glob("*.pdf"):
                child.unlink(missing_ok=True)
                removed += 1
            return removed

        return await asyncio.to_thread(remove_all)


class GcsArtifactStore(ArtifactStore):
    """Artifacts as blobs in a GCS bucket, handed out through v4 signed URLs."""

    requires_auth = False

    def __init__(self, bucket: str, *, prefix: str = "converted/", client=None, project: str | None = None) -> None:
        if not bucket:
            raise RuntimeError("GCS_BUCKET must be configured for the gcs storage backend.")
        if client is None:
            from google.cloud import storage

            client = storage.Client(project=project)
        self._client = client
        self._bucket_name = bucket
        self._prefix = prefix

    def object_name(self, artifact_id: str) -> str:
        return f"{self._prefix}{artifact_id}"

    def _blob(self, artifact_id: str):
        return self._client.bucket(self._bucket_name).blob(self.object_name(artifact_id))

    async def save(self, artifact_id: str, data: bytes) -> None:
        blob = self._blob(artifact_id)
        blob.content_type = "application/pdf"
        await asyncio.to_thread(blob.upload_from_string, data, "application/pdf")

    async def delete(self, artifact_id: str) -> None:
        await asyncio.to_thread(self._blob(artifact_id).delete)

    async def locator(self, artifact_id: str, *, base_url: str, expires_at: float) -> str:
        # Absolute expiration so the URL dies exactly when the registry entry does.
        expiration = datetime.fromtimestamp(expires_at, tz=timezone.utc)
        blob = self._blob(artifact_id)
        return await asyncio.to_thread(blob.generate_signed_url, version="v4", expiration=expiration, method="GET")

    async def sweep(self) -> int:
        def remove_all() -> int:
            removed = 0
            for blob in self._client.list_blobs(self._bucket_name, prefix=self._prefix):
                blob.delete()
                removed += 1
            return removed

        return await asyncio.to_thread(remove_all)


class SharedSecretSecurity(SecurityGateway):
    def __init__(self, secret: str) -> None:
        if not secret:
            raise RuntimeError("AUTH_TOKEN is not set")
        self._secret = secret

    def verify(self, token: str) -> bool:
        """Check a bearer token against the configured secret.

        - Argon2: if the secret is a PHC string ("$argon2..."), verify with argon2.low_level.verify_secret.
        - Plain: constant-time comparison with the configured value.
        """
        try:
            if self._secret.startswith("$argon2"):
                from argon2.low_level import Type, verify_secret

                return verify_secret(self._secret.encode("utf-8"), token.encode("utf-8"), Type.ID)
            return hmac.compare_digest(self._secret.encode("utf-8"), token.encode("utf-8"))
        except Exception:
            return False


class PyMuPdfRasterizer(RasterizerGateway):
    def rasterize(self, data: bytes, scale: int) -> list[bytes]:
        import fitz  # PyMuPDF

        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except Exception as e:
            raise ConversionError(f"invalid or corrupted PDF: {e}") from e
        if doc.page_count == 0:
            doc.close()
            raise ConversionError("document has no pages")

        pages: list[bytes] = []
        try:
            for page in doc:
                # Scale so the longest side of the page renders at `scale` pixels.
                zoom = scale / max(page.rect.width, page.rect.height)
                pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
                pages.append(pix.tobytes("png"))
        finally:
            doc.close()
        return pages


class PillowImageEncoder(ImageEncoderGateway):
    def fit_inside(self, image: bytes, box: tuple[int, int]) -> bytes:
        from PIL import Image

        with Image.open(io.BytesIO(image)) as img:
            img.load()
            box_w, box_h = box
            ratio = min(box_w / img.width, box_h / img.height)
            size = (max(1, round(img.width * ratio)), max(1, round(img.height * ratio)))
            if size != img.size:
                img = img.resize(size, resample=Image.Resampling.LANCZOS)
            buf = io.BytesIO()
            img.save(buf, format="PNG")
            return buf.getvalue()


class PyMuPdfAssembler(AssemblerGateway):
    PLACEMENTS = ("natural", "stretch")

    def assemble(
        self,
        images: Sequence[bytes],
        page_size: tuple[float, float],
        placement: str = "natural",
    ) -> bytes:
        """Build a PDF with one fixed-size page per image, in the given order.

        "natural" draws each image at 1 px = 1 pt from the bottom-left corner
        of the page, without fitting it to the page box. "stretch" covers the
        whole page.
        """
        import fitz  # PyMuPDF

        if placement not in self.PLACEMENTS:
            raise ValueError(f"unknown placement {placement!r}")
        page_w, page_h = page_size
        out = fitz.open()
        try:
            for img in images:
                page = out.new_page(width=page_w, height=page_h)
                if placement == "stretch":
                    rect = page.rect
                else:
                    pix = fitz.Pixmap(img)
                    # PyMuPDF's origin is top-left, so anchor the bottom edge at page_h.
                    rect = fitz.Rect(0, page_h - pix.height, pix.width, page_h)
                page.insert_image(rect, stream=img, keep_proportion=False)
            buf = io.BytesIO()
            out.save(buf, deflate=True, garbage=4)
            return buf.getvalue()
        finally:
            out.close()
