"""Blob storage for uploaded source documents and source resolution.

A document source is either a path inside the knowledge-base bucket or a
direct URL. Both are resolved once, at the start of ingestion, into a
ResolvedSource carrying the bytes and a single canonical URL.
"""
import re
import time
import unicodedata
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union
from urllib.parse import quote, unquote, urlparse
import httpx
import structlog

from kbchat import config
from kbchat.errors import StorageError

logger = structlog.get_logger()

PUBLIC_PATH_PATTERN = re.compile(r"/storage/v1/object/public/([^/]+)/(.+)$")
ALLOWED_EXTENSIONS = {".pdf", ".txt", ".md", ".markdown"}


@dataclass(frozen=True)
class BlobReference:
    """A path inside the blob storage bucket."""

    path: str


@dataclass(frozen=True)
class DirectUrl:
    """A URL the source can be downloaded from."""

    url: str


DocumentSource = Union[BlobReference, DirectUrl]


@dataclass(frozen=True)
class ResolvedSource:
    """Source bytes plus the pointers stored in chunk metadata."""

    url: str
    storage_path: Optional[str]
    data: bytes
    content_type: Optional[str] = None

    @property
    def filename(self) -> str:
        return Path(self.storage_path or urlparse(self.url).path).name


def sanitize_filename(name: str, max_length: int = 200) -> str:
    """Remove accents and replace anything outside [A-Za-z0-9._-] with '_'."""
    decomposed = unicodedata.normalize("NFD", name)
    ascii_name = "".join(c for c in decomposed if not unicodedata.combining(c))
    return re.sub(r"[^a-zA-Z0-9._-]", "_", ascii_name)[:max_length]


class LocalBlobStorage:
    """Filesystem bucket exposing storage-style public URLs."""

    def __init__(
        self,
        root: Path = None,
        bucket: str = None,
        public_base_url: str = None,
    ):
        """Initialize the blob storage.

        Args:
            root: Directory holding buckets (default from config)
            bucket: Bucket name (default from config)
            public_base_url: Base URL used to build public URLs (default from config)
        """
        self.bucket = bucket or config.BLOB_BUCKET
        self.root = (root or config.BLOB_DIR) / self.bucket
        self.public_base_url = (public_base_url or config.PUBLIC_BASE_URL).rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path.strip().lstrip("/")).resolve()
        if self.root.resolve() not in target.parents:
            raise StorageError(f"Invalid storage path: {path}")
        return target

    def upload(self, path: str, data: bytes) -> str:
        """Store bytes under a bucket path (never overwrites).

        Returns:
            Public URL of the stored blob
        """
        target = self._resolve(path)
        if target.exists():
            raise StorageError(f"Blob already exists: {path}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Failed to store blob {path}: {e}") from e

        logger.info("blob_uploaded", path=path, size=len(data))
        return self.public_url(path)

    def download(self, path: str) -> bytes:
        """Read a blob's bytes."""
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError as e:
            raise StorageError(f"File not found in storage: {path}") from e
        except OSError as e:
            raise StorageError(f"Failed to read blob {path}: {e}") from e

    def remove(self, path: str) -> None:
        """Delete a blob."""
        target = self._resolve(path)
        try:
            target.unlink()
        except FileNotFoundError as e:
            raise StorageError(f"File not found in storage: {path}") from e
        except OSError as e:
            raise StorageError(f"Failed to remove blob {path}: {e}") from e

        logger.info("blob_removed", path=path)

    def public_url(self, path: str) -> str:
        """Public URL for a bucket path."""
        return (
            f"{self.public_base_url}/storage/v1/object/public/"
            f"{self.bucket}/{quote(path.strip(), safe='/')}"
        )

    def path_from_url(self, url: str) -> Optional[str]:
        """Recover the bucket path from one of this storage's public URLs."""
        try:
            parsed = urlparse(url)
        except ValueError:
            return None
        match = PUBLIC_PATH_PATTERN.search(parsed.path)
        if not match or match.group(1) != self.bucket:
            return None
        return unquote(match.group(2))

    def new_upload_path(self, filename: str) -> str:
        """Bucket path for a fresh upload: documents/<epoch-ms>-<safe name>."""
        return f"documents/{int(time.time() * 1000)}-{sanitize_filename(filename)}"


def validate_upload(filename: str, size: int, max_mb: int = None) -> None:
    """Reject uploads with an unsupported type or above the size limit.

    Raises:
        ValueError: If the upload is not acceptable
    """
    max_mb = max_mb or config.MAX_UPLOAD_MB
    extension = Path(filename or "").suffix.lower()
    if extension not in ALLOWED_EXTENSIONS:
        raise ValueError(
            f"Unsupported file type '{extension or filename}'. "
            f"Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
        )
    if size > max_mb * 1024 * 1024:
        raise ValueError(f"File too large. Maximum size: {max_mb}MB")


async def resolve_source(
    source: DocumentSource,
    storage: LocalBlobStorage,
    timeout: float = 60.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ResolvedSource:
    """Fetch a document source and compute its canonical URL.

    Args:
        source: Bucket path or direct URL
        storage: Blob storage used for bucket paths and URL parsing
        timeout: Download timeout in seconds
        transport: Optional httpx transport (used by tests)

    Returns:
        ResolvedSource with bytes, URL and (if known) storage path

    Raises:
        StorageError: If the source cannot be read or downloaded
    """
    if isinstance(source, BlobReference):
        path = source.path.strip()
        if not path:
            raise StorageError("Empty storage path")
        data = storage.download(path)
        return ResolvedSource(url=storage.public_url(path), storage_path=path, data=data)

    if isinstance(source, DirectUrl):
        url = source.url.strip()
        if not url:
            raise StorageError("Empty source URL")
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
                response = await client.get(url, headers={"Accept": "application/pdf"})
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StorageError(
                f"Failed to fetch document: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise StorageError(f"Failed to fetch document: {e}", retryable=True) from e

        logger.info("source_downloaded", url=url, size=len(response.content))
        return ResolvedSource(
            url=url,
            storage_path=storage.path_from_url(url),
            data=response.content,
            content_type=response.headers.get("content-type"),
        )

    raise TypeError(f"Unsupported document source: {source!r}")
