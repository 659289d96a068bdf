from typing import Protocol, Sequence


class Clock(Protocol):
    def now(self) -> float:
        """Current time as epoch seconds."""


class RasterizerGateway(Protocol):
    def rasterize(self, data: bytes, scale: int) -> list[bytes]:
        """Render every page of a PDF to PNG bytes, in page order.
        This is a blocking call; callers should offload to threads.
        """


class ImageEncoderGateway(Protocol):
    def fit_inside(self, image: bytes, box: tuple[int, int]) -> bytes:
        """Resize an image to fit inside box, keeping its aspect ratio."""


class AssemblerGateway(Protocol):
    def assemble(
        self,
        images: Sequence[bytes],
        page_size: tuple[float, float],
        placement: str,
    ) -> bytes:
        ...


class ArtifactStore(Protocol):
    # Whether downloads and time-remaining queries need the bearer token.
    requires_auth: bool

    async def save(self, artifact_id: str, data: bytes) -> None:
        ...

    async def delete(self, artifact_id: str) -> None:
        ...

    async def locator(self, artifact_id: str, *, base_url: str, expires_at: float) -> str:
        ...

    async def sweep(self) -> int:
        ...


class SecurityGateway(Protocol):
    def verify(self, token: str) -> bool:
        ...
