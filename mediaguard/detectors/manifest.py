# mediaguard/detectors/manifest.py
"""
Embedded provenance manifest validation.

Raw manifest stores are parsed defensively (every field on its own, with the
historical key spellings tried in order), checked against structural,
certificate, timestamp and signature rules, and scored 0-100.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from mediaguard.core.config import get_settings
from mediaguard.core.schemas import (
    Assertion,
    CertificateRecord,
    FallbackReport,
    Ingredient,
    ManifestRecord,
    Producer,
    Signature,
    TimestampInfo,
    ValidationOutcome,
    ValidationStatus,
)
from mediaguard.detectors.manifest_reader import C2paReader, ManifestReader

logger = logging.getLogger(__name__)


TEXT_MARKERS: Tuple[bytes, ...] = (
    b"urn:uuid:c2pa",
    b"c2pa.manifest",
    b"contentauth",
    b"jumbf",
    b"c2pa",
    b"cai:",
)
BINARY_MARKERS: Tuple[bytes, ...] = (
    b"\x00\x00\x00\x0c\x6a\x75\x6d\x62",  # JUMBF superbox header
    b"jumb",
)

SUPPORTED_ALGORITHMS = {"ES256", "ES384", "ES512", "PS256", "PS384", "PS512", "ED25519"}
CRITICAL_TERMS = ("signature", "corrupted", "invalid", "future")

WARNING_CODES = {"certificate.untrusted", "timestamp.old"}
SUCCESS_CODES = {"success", "valid"}

MAX_MANIFEST_AGE = timedelta(days=365)
FUTURE_TOLERANCE = timedelta(days=1)


# -----------------------------
# DETECTION
# -----------------------------
def has_manifest_markers(data: bytes) -> bool:
    """Linear scan for any text or binary manifest marker."""
    if not data:
        return False
    lowered = data.lower()
    if any(lowered.find(marker) != -1 for marker in TEXT_MARKERS):
        return True
    return any(data.find(marker) != -1 for marker in BINARY_MARKERS)


# -----------------------------
# DEFENSIVE PARSING
# -----------------------------
def safe_extract(obj: Any, keys: Sequence[str], default: Any = None) -> Any:
    """First non-None value among ``keys``; never raises."""
    if not isinstance(obj, Mapping):
        return default
    for key in keys:
        try:
            value = obj.get(key)
        except Exception:
            continue
        if value is not None:
            return value
    return default


def parse_time(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _parse_generator(raw: Mapping) -> Optional[str]:
    generator = safe_extract(raw, ("claim_generator", "claimGenerator"))
    if generator:
        return _as_str(generator)
    info = safe_extract(raw, ("claim_generator_info", "claimGeneratorInfo"))
    if isinstance(info, list) and info and isinstance(info[0], Mapping):
        return _as_str(info[0].get("name"))
    return None


def _parse_signature(raw: Mapping) -> Optional[Signature]:
    sig = safe_extract(raw, ("signature", "signature_info", "signatureInfo"))
    if not isinstance(sig, Mapping):
        return None
    gen_time = safe_extract(sig, ("time", "gen_time", "genTime"))
    tsa = safe_extract(sig, ("timestamp_authority", "timestampAuthority", "tsa"))
    ts_info = safe_extract(sig, ("timestamp_info", "timestampInfo"))
    if isinstance(ts_info, Mapping):
        gen_time = safe_extract(ts_info, ("gen_time", "genTime", "time"), gen_time)
        tsa = safe_extract(ts_info, ("timestamp_authority", "timestampAuthority"), tsa)
    return Signature(
        algorithm=_as_str(safe_extract(sig, ("algorithm", "alg"))),
        certificate=_as_str(safe_extract(sig, ("certificate", "cert", "cert_serial_number"))),
        signature_value=_as_str(safe_extract(sig, ("signature_value", "signatureValue", "value"))),
        timestamp_info=TimestampInfo(
            gen_time=_as_str(gen_time),
            timestamp_authority=_as_str(tsa),
        ) if gen_time or tsa else None,
    )


def _parse_assertions(raw: Mapping) -> List[Assertion]:
    items = safe_extract(raw, ("assertions",), [])
    out: List[Assertion] = []
    if not isinstance(items, list):
        return out
    for item in items:
        if not isinstance(item, Mapping):
            continue
        label = safe_extract(item, ("label", "type"))
        if not label:
            continue
        out.append(Assertion(
            label=str(label),
            data=item.get("data"),
            hash=_as_str(item.get("hash")),
        ))
    return out


def _parse_ingredients(raw: Mapping) -> List[Ingredient]:
    items = safe_extract(raw, ("ingredients",), [])
    out: List[Ingredient] = []
    if not isinstance(items, list):
        return out
    for item in items:
        if not isinstance(item, Mapping):
            continue
        out.append(Ingredient(
            title=_as_str(item.get("title")),
            format=_as_str(item.get("format")),
            document_id=_as_str(safe_extract(item, ("document_id", "documentId"))),
            instance_id=_as_str(safe_extract(item, ("instance_id", "instanceId"))),
            relationship=_as_str(item.get("relationship")),
            hash=_as_str(item.get("hash")),
        ))
    return out


def _parse_producer(raw: Mapping) -> Optional[Producer]:
    producer = safe_extract(raw, ("producer", "author"))
    if isinstance(producer, str):
        return Producer(name=producer)
    if not isinstance(producer, Mapping):
        return None
    credential = producer.get("credential") or []
    return Producer(
        name=_as_str(producer.get("name")),
        identifier=_as_str(safe_extract(producer, ("identifier", "@id", "id"))),
        credential=[str(c) for c in credential] if isinstance(credential, list) else [],
    )


def parse_manifest(raw: Any) -> ManifestRecord:
    """Build a ManifestRecord, skipping any field that fails to parse."""
    if not isinstance(raw, Mapping):
        return ManifestRecord()

    fields: Dict[str, Any] = {}
    extractors = {
        "claim_generator": _parse_generator,
        "title": lambda r: _as_str(r.get("title")),
        "format": lambda r: _as_str(r.get("format")),
        "instance_id": lambda r: _as_str(safe_extract(r, ("instance_id", "instanceId"))),
        "timestamp": lambda r: _as_str(safe_extract(r, ("timestamp", "claim_timestamp", "claimTimestamp"))),
        "producer": _parse_producer,
        "assertions": _parse_assertions,
        "ingredients": _parse_ingredients,
        "signature": _parse_signature,
    }
    for name, extract in extractors.items():
        try:
            value = extract(raw)
        except Exception as e:
            logger.debug("Skipping manifest field %s: %s", name, e)
            continue
        if value is not None:
            fields[name] = value

    record = ManifestRecord(**fields)
    if record.timestamp is None and record.signature and record.signature.timestamp_info:
        record = record.model_copy(update={"timestamp": record.signature.timestamp_info.gen_time})
    return record


def _issuer_trusted(issuer: str, trusted_issuers: Iterable[str]) -> bool:
    return any(t in issuer for t in trusted_issuers)


def parse_certificate(
    raw: Any,
    trusted_issuers: Iterable[str],
    now: datetime,
) -> Optional[CertificateRecord]:
    if not isinstance(raw, Mapping):
        return None
    subject = _as_str(safe_extract(raw, ("subject", "common_name", "commonName", "cn"))) or "Unknown"
    issuer = _as_str(safe_extract(raw, ("issuer", "issuer_name", "issuerName"))) or "Unknown"
    valid_from = _as_str(safe_extract(raw, ("valid_from", "validFrom", "notBefore", "not_before")))
    valid_to = _as_str(safe_extract(raw, ("valid_to", "validTo", "notAfter", "not_after")))

    start, end = parse_time(valid_from), parse_time(valid_to)
    explicit = safe_extract(raw, ("is_valid", "isValid"))
    if start is not None and end is not None:
        is_valid = start <= now <= end and explicit is not False
    else:
        is_valid = bool(explicit)

    purpose = safe_extract(raw, ("purpose", "key_usage", "keyUsage"), [])
    return CertificateRecord(
        subject=subject,
        issuer=issuer,
        serial_number=_as_str(safe_extract(raw, ("serial_number", "serialNumber", "cert_serial_number"))) or "",
        valid_from=valid_from,
        valid_to=valid_to,
        is_valid=is_valid,
        is_trusted=_issuer_trusted(issuer, trusted_issuers),
        purpose=[str(p) for p in purpose] if isinstance(purpose, list) else [],
    )


def _certificate_from_signature_info(
    raw_manifest: Any,
    status_codes: Sequence[Any],
    trusted_issuers: Iterable[str],
) -> Optional[CertificateRecord]:
    sig = safe_extract(raw_manifest, ("signature_info", "signatureInfo", "signature"))
    if not isinstance(sig, Mapping) or not sig.get("issuer"):
        return None
    credential_failed = any(
        str(safe_extract(s, ("code",), "")).startswith("signingCredential")
        and safe_extract(s, ("code",)) not in SUCCESS_CODES
        for s in status_codes
    )
    issuer = str(sig["issuer"])
    return CertificateRecord(
        subject=_as_str(safe_extract(sig, ("common_name", "commonName"))) or "Unknown",
        issuer=issuer,
        serial_number=_as_str(sig.get("cert_serial_number")) or "",
        is_valid=not credential_failed,
        is_trusted=_issuer_trusted(issuer, trusted_issuers),
    )


# -----------------------------
# RULES
# -----------------------------
def _is_critical(message: str) -> bool:
    return any(term in message for term in CRITICAL_TERMS)


def check_manifest(
    manifest: ManifestRecord,
    chain: List[CertificateRecord],
    status_codes: Sequence[Any],
    now: datetime,
    signature_checked: bool = False,
) -> Tuple[List[str], List[str]]:
    errors: List[str] = []
    warnings: List[str] = []

    if not manifest.claim_generator:
        errors.append("Missing claim generator information")

    # timestamps
    if not manifest.timestamp:
        warnings.append("No timestamp found in manifest")
    else:
        ts = parse_time(manifest.timestamp)
        if ts is not None:
            if now - ts > MAX_MANIFEST_AGE:
                warnings.append("Manifest timestamp is over a year old")
            elif ts - now > FUTURE_TOLERANCE:
                errors.append("Manifest timestamp is in the future")
    sig_info = manifest.signature.timestamp_info if manifest.signature else None
    if sig_info and sig_info.gen_time:
        gen = parse_time(sig_info.gen_time)
        if gen is not None and gen - now > FUTURE_TOLERANCE:
            errors.append("Signature timestamp is in the future")

    # certificate chain
    if not chain:
        errors.append("No certificate chain found")
    else:
        invalid = [c for c in chain if not c.is_valid]
        if invalid:
            errors.append("Invalid certificates: " + ", ".join(c.subject for c in invalid))
        expired = [
            c for c in chain
            if parse_time(c.valid_to) is not None and parse_time(c.valid_to) < now
        ]
        if expired:
            errors.append("Expired certificates: " + ", ".join(c.subject for c in expired))
        untrusted = [c for c in chain if not c.is_trusted]
        if untrusted:
            warnings.append("Untrusted certificate issuers: " + ", ".join(c.issuer for c in untrusted))
        if any(c.is_self_signed for c in chain):
            warnings.append("Self-signed certificates detected - authenticity cannot be verified")

    # reader-reported status codes
    for status in status_codes:
        if isinstance(status, Mapping):
            code = str(status.get("code") or "")
            if code in SUCCESS_CODES:
                continue
            message = (
                safe_extract(status, ("explanation", "message", "description"))
                or "Signature validation failed"
            )
        else:
            code, message = str(status), str(status)
            if code in SUCCESS_CODES:
                continue
        if code in WARNING_CODES:
            warnings.append(str(message))
        else:
            errors.append(str(message))

    # assertions
    if manifest.assertions:
        has_action = any(
            "action" in a.label or "stds.schema-org.CreativeWork" in a.label
            for a in manifest.assertions
        )
        if not has_action:
            warnings.append("No action assertions found - provenance may be incomplete")
    else:
        warnings.append("No assertions found in manifest")

    # signature
    sig = manifest.signature
    if sig is None:
        errors.append("No signature information found")
    else:
        if not sig.algorithm:
            errors.append("Missing signature algorithm information")
        elif sig.algorithm.upper() not in SUPPORTED_ALGORITHMS:
            warnings.append(f"Uncommon signature algorithm: {sig.algorithm}")
        if not sig.signature_value and not signature_checked:
            errors.append("Missing signature value")

    return errors, warnings


def classify(errors: Sequence[str], warnings: Sequence[str]) -> ValidationStatus:
    if errors:
        if any(_is_critical(e) for e in errors):
            return "invalid"
        return "valid-untrusted"
    if any("Untrusted" in w or "self-signed" in w for w in warnings):
        return "valid-untrusted"
    return "valid"


STATUS_POINTS = {"valid": 40, "valid-untrusted": 25, "invalid": 5, "missing": 0, "error": 0}


def confidence_score(
    status: ValidationStatus,
    errors: Sequence[str],
    warnings: Sequence[str],
    chain: Sequence[CertificateRecord],
    manifest: Optional[ManifestRecord],
    now: datetime,
) -> int:
    score = STATUS_POINTS[status]
    factors = 40

    if chain:
        cert_score = 0
        if all(c.is_valid for c in chain):
            cert_score += 10
        if any(c.is_trusted for c in chain):
            cert_score += 10
        unexpired = [
            c for c in chain
            if parse_time(c.valid_to) is None or parse_time(c.valid_to) > now
        ]
        if len(unexpired) == len(chain):
            cert_score += 5
        score += cert_score
        factors += 25

    completeness = 0
    if manifest is not None:
        if manifest.claim_generator:
            completeness += 5
        if manifest.timestamp:
            completeness += 5
        if manifest.signature:
            completeness += 5
        if manifest.assertions:
            completeness += 3
        if manifest.producer:
            completeness += 2
    score += completeness
    factors += 20

    critical = sum(1 for e in errors if _is_critical(e))
    minor = len(errors) - critical
    penalty = 15 - critical * 8 - minor * 3 - len(warnings)
    score += max(0, penalty)
    factors += 15

    return max(0, min(100, round(score / factors * 100)))


def extract_signer(
    chain: Sequence[CertificateRecord],
    manifest: Optional[ManifestRecord],
) -> str:
    if chain:
        leaf = chain[0]
        for part in leaf.subject.split(","):
            key, _, value = part.strip().partition("=")
            if key.upper() == "CN" and value:
                return value
        if leaf.subject and leaf.subject != "Unknown":
            return leaf.subject
    if manifest is not None:
        if manifest.producer and manifest.producer.name:
            return manifest.producer.name
        if manifest.claim_generator:
            return manifest.claim_generator
    return "Unknown Signer"


def describe_failure(exc: BaseException) -> str:
    """Map a reader/validator exception to a stable, descriptive message."""
    if isinstance(exc, asyncio.TimeoutError):
        return "C2PA data present but read operation timed out"
    if isinstance(exc, MemoryError):
        return "Insufficient memory for C2PA processing"
    if isinstance(exc, ImportError):
        return "C2PA module failed to load"

    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()
    if "timeout" in lowered or "timed out" in lowered:
        return "C2PA data present but read operation timed out"
    if "corrupt" in lowered or "invalid format" in lowered:
        return "Corrupted C2PA manifest detected"
    if "memory" in lowered or "allocation" in lowered:
        return "Insufficient memory for C2PA processing"
    if "wasm" in lowered or "module" in lowered:
        return "C2PA module failed to load"
    if "network" in lowered or "fetch" in lowered:
        return "Network error during C2PA validation"
    if "signature" in lowered:
        return "Invalid or corrupted signature"
    return f"Critical C2PA error: {message}"


# -----------------------------
# VALIDATOR
# -----------------------------
class ManifestValidator:
    def __init__(
        self,
        reader: Optional[ManifestReader] = None,
        trusted_issuers: Optional[Sequence[str]] = None,
        read_timeout_s: Optional[float] = None,
    ):
        settings = get_settings()
        self.reader = reader or C2paReader()
        self.trusted_issuers = list(trusted_issuers or settings.TRUSTED_ISSUERS)
        self.read_timeout_s = read_timeout_s or settings.MANIFEST_READ_TIMEOUT_S

    async def validate(self, data: bytes, mime_type: Optional[str] = None) -> ValidationOutcome:
        """Never raises; every failure becomes an ``error`` outcome."""
        if not data or not has_manifest_markers(data):
            return ValidationOutcome(status="missing")

        try:
            store = await asyncio.wait_for(
                asyncio.to_thread(self.reader.read, data, mime_type),
                timeout=self.read_timeout_s,
            )
        except Exception as e:
            message = describe_failure(e)
            logger.warning("Manifest read failed [resource]: %s (%s)", message, e)
            return ValidationOutcome(status="error", errors=[message])

        if not store:
            return ValidationOutcome(status="missing")

        try:
            return self.evaluate(store)
        except Exception as e:
            message = describe_failure(e)
            logger.warning("Manifest evaluation failed [input]: %s", message)
            return ValidationOutcome(status="error", errors=[message])

    def evaluate(self, store: Mapping, now: Optional[datetime] = None) -> ValidationOutcome:
        """Apply every rule to a raw manifest store and score the result."""
        now = now or datetime.now(timezone.utc)
        raw_manifest = safe_extract(store, ("manifest", "active_manifest", "activeManifest"))
        if raw_manifest is None:
            return ValidationOutcome(status="missing")

        manifest = parse_manifest(raw_manifest)
        status_codes = safe_extract(store, ("validation_status", "validationStatus"), [])
        if isinstance(status_codes, (Mapping, str)):
            status_codes = [status_codes]

        raw_chain = safe_extract(store, ("certificate_chain", "certificateChain", "certificates"), [])
        chain: List[CertificateRecord] = []
        for raw_cert in raw_chain if isinstance(raw_chain, list) else []:
            try:
                cert = parse_certificate(raw_cert, self.trusted_issuers, now)
            except Exception as e:
                logger.debug("Skipping unparseable certificate: %s", e)
                continue
            if cert is not None:
                chain.append(cert)
        if not chain:
            derived = _certificate_from_signature_info(raw_manifest, status_codes, self.trusted_issuers)
            if derived is not None:
                chain.append(derived)

        errors, warnings = check_manifest(
            manifest,
            chain,
            status_codes,
            now,
            signature_checked=bool(store.get("signature_checked")),
        )
        status = classify(errors, warnings)
        score = confidence_score(status, errors, warnings, chain, manifest, now)

        signed_at = None
        if manifest.signature and manifest.signature.timestamp_info:
            signed_at = manifest.signature.timestamp_info.gen_time
        return ValidationOutcome(
            status=status,
            errors=errors,
            warnings=warnings,
            confidence_score=score,
            manifest=manifest,
            certificate_chain=chain,
            signer=extract_signer(chain, manifest),
            signed_timestamp=signed_at or manifest.timestamp,
            software_agent=manifest.claim_generator,
        )

    def merge_fallback(self, outcome: ValidationOutcome, report: FallbackReport) -> ValidationOutcome:
        """Fold fallback findings into a missing/error outcome."""
        if outcome.status not in ("missing", "error"):
            return outcome

        errors = list(outcome.errors)
        warnings = list(outcome.warnings)
        status: ValidationStatus = outcome.status

        if report.has_metadata:
            warnings.append(f"Alternative metadata found: {report.metadata_type or 'Unknown type'}")

        suspicious = [
            f for f in report.findings
            if f.type == "signature" and ("AI" in f.description or "deepfake" in f.description)
        ]
        if suspicious:
            errors.extend(f.description for f in suspicious)
            if status == "missing":
                status = "invalid"

        if report.recommends_upgrade:
            warnings.append("Content appears professional - consider C2PA signing for authenticity")

        return outcome.model_copy(update={
            "status": status,
            "errors": errors,
            "warnings": warnings,
            "software_agent": outcome.software_agent or report.software_agent,
            "signer": outcome.signer or report.creator,
        })
