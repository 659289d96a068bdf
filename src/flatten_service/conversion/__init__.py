"""
Domain layer for PDF flattening.
Provides interfaces (gateways), the expiration registry and a service that
orchestrates conversions, abstracting rasterizing, image encoding and
storage so front-ends (HTTP or others) can use the same core logic.
"""

from .errors import (
    AuthError,
    BadRequestError,
    ConversionError,
    DuplicateArtifactError,
    MethodError,
    NotFoundError,
    ServiceError,
    UnsupportedMediaError,
    UploadTooLargeError,
)
from .expiry import DelayedTaskScheduler, ExpirationRecord, ExpirationRegistry
from .interfaces import ArtifactStore, AssemblerGateway, Clock, ImageEncoderGateway, RasterizerGateway, SecurityGateway
from .service import ConversionResult, ConversionService, new_artifact_id
