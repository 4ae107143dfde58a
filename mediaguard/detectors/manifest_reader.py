# mediaguard/detectors/manifest_reader.py

import io
import json
import logging
from typing import Any, Dict, Optional, Protocol

from mediaguard.detectors.signals import sniff_mime

logger = logging.getLogger(__name__)


class ManifestReadError(Exception):
    """The embedded manifest exists but could not be read."""


class ManifestReader(Protocol):
    def read(self, data: bytes, mime_type: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Return a raw manifest store:
            {"manifest": {...}, "certificate_chain": [...], "validation_status": [...]}
        or None when the bytes carry no manifest.
        """
        ...


class C2paReader:
    """ManifestReader backed by the c2pa-python SDK."""

    def read(self, data: bytes, mime_type: Optional[str] = None) -> Optional[Dict[str, Any]]:
        import c2pa  # loaded on first use; import failures surface as module errors

        fmt = mime_type or sniff_mime(data) or "image/jpeg"
        try:
            reader = c2pa.Reader(fmt, io.BytesIO(data))
        except Exception as e:
            text = str(e)
            if "ManifestNotFound" in text or "not found" in text.lower():
                return None
            raise ManifestReadError(text) from e

        try:
            store = json.loads(reader.json())
        finally:
            close = getattr(reader, "close", None)
            if callable(close):
                close()

        manifests = store.get("manifests") or {}
        active = manifests.get(store.get("active_manifest") or "")
        if active is None and manifests:
            active = next(iter(manifests.values()))
        if active is None:
            return None

        return {
            "manifest": active,
            "certificate_chain": active.get("certificate_chain") or [],
            "validation_status": store.get("validation_status") or [],
            # the SDK verifies the COSE claim signature while reading;
            # failures come back as validation_status codes
            "signature_checked": True,
        }
