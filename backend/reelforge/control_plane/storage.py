"""Signed upload grants and on-disk media storage for the control plane.

A grant is a base64 JSON document plus an HMAC-SHA256 signature keyed with the
shared daemon secret. The storage route only accepts uploads that present a
valid, unexpired grant for the same project and asset kind.
"""

import base64
import hashlib
import hmac
import json
import logging
import re
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import BinaryIO, Optional

from reelforge.control_plane.store import StoreError
from reelforge.db.models import utcnow
from reelforge.schemas.status import AssetKind
from reelforge.schemas.wire import StorageGrant, StorageGrantRequest, StorageUpload

logger = logging.getLogger(__name__)

GRANT_TTL = timedelta(minutes=15)
MAX_GRANT_BYTES = 2 * 1024 * 1024 * 1024
CHUNK_SIZE = 1024 * 1024

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class GrantRejected(StoreError):
    status_code = 403


class UploadTooLarge(StoreError):
    status_code = 413


class StorageService:
    """Issue upload grants and persist uploaded media under ``media_dir``."""

    def __init__(self, media_dir: Path, secret: str, public_base_url: str):
        self.media_dir = Path(media_dir).resolve()
        self._secret = secret.encode("utf-8")
        self.public_base_url = public_base_url.rstrip("/")

    def _sign(self, data: str) -> str:
        return hmac.new(self._secret, data.encode("ascii"), hashlib.sha256).hexdigest()

    def issue_grant(self, request: StorageGrantRequest) -> StorageGrant:
        if request.max_bytes > MAX_GRANT_BYTES:
            raise UploadTooLarge(f"Requested grant exceeds {MAX_GRANT_BYTES} bytes")
        expires_at = utcnow() + GRANT_TTL
        body = {
            "projectId": request.project_id,
            "kind": request.kind.value,
            "maxBytes": request.max_bytes,
            "mimeTypes": request.mime_types,
            "expiresAt": expires_at.isoformat(),
        }
        data = base64.urlsafe_b64encode(json.dumps(body, sort_keys=True).encode("utf-8")).decode("ascii")
        return StorageGrant(
            data=data,
            signature=self._sign(data),
            expires_at=expires_at,
            max_bytes=request.max_bytes,
            mime_types=request.mime_types,
            kind=request.kind,
            project_id=request.project_id,
        )

    def verify_grant(self, data: str, signature: str, project_id: str, kind: AssetKind) -> dict:
        """Return the decoded grant or raise GrantRejected."""
        if not hmac.compare_digest(self._sign(data), signature or ""):
            raise GrantRejected("Invalid upload grant signature")
        try:
            body = json.loads(base64.urlsafe_b64decode(data.encode("ascii")))
        except (ValueError, UnicodeDecodeError) as e:
            raise GrantRejected("Malformed upload grant") from e
        if body.get("projectId") != project_id or body.get("kind") != AssetKind(kind).value:
            raise GrantRejected("Upload grant does not match project or asset kind")
        if datetime.fromisoformat(body["expiresAt"]) < utcnow():
            raise GrantRejected("Upload grant expired")
        return body

    def _target_path(self, project_id: str, kind: AssetKind, filename: str) -> tuple[Path, str]:
        safe_name = _SAFE_NAME.sub("-", Path(filename or "upload.bin").name).strip("-") or "upload.bin"
        relative = f"projects/{project_id}/{AssetKind(kind).value}/{uuid.uuid4().hex[:12]}-{safe_name}"
        target = (self.media_dir / relative).resolve()

        # Path traversal protection
        if not target.is_relative_to(self.media_dir):
            raise GrantRejected("Invalid upload path")
        return target, relative

    def public_url(self, relative: str) -> str:
        return f"{self.public_base_url}/media/{relative}"

    def save_upload(
        self,
        project_id: str,
        kind: AssetKind,
        grant: dict,
        filename: str,
        content_type: Optional[str],
        stream: BinaryIO,
        is_final: bool = False,
    ) -> StorageUpload:
        """Copy ``stream`` to disk, enforcing the grant's size and mime limits."""
        allowed = grant.get("mimeTypes") or []
        if allowed and content_type not in allowed:
            raise GrantRejected(f"Mime type {content_type} not allowed by grant")
        max_bytes = int(grant.get("maxBytes") or 0)

        target, relative = self._target_path(project_id, kind, filename)
        target.parent.mkdir(parents=True, exist_ok=True)
        written = 0
        with open(target, "wb") as out:
            while True:
                chunk = stream.read(CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if max_bytes and written > max_bytes:
                    out.close()
                    target.unlink(missing_ok=True)
                    raise UploadTooLarge(f"Upload exceeds granted size ({max_bytes} bytes)")
                out.write(chunk)

        logger.info("Stored %s upload for project %s at %s (%d bytes)", kind.value, project_id, relative, written)
        return StorageUpload(
            kind=kind,
            path=relative,
            url=self.public_url(relative),
            is_final=is_final if kind == AssetKind.video else None,
        )
