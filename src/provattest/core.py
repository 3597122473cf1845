from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import re
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from provattest.signing import ContextProvider, LogEntryRef, SignResult, Signer, TransparencyLog

logger = logging.getLogger(__name__)

STATEMENT_TYPE = "https://in-toto.io/Statement/v1"
SLSA_PREDICATE_TYPE = "https://slsa.dev/provenance/v0.2"
DSSE_PAYLOAD_TYPE = "application/vnd.in-toto+json"
PROVENANCE_SUFFIX = ".intoto.jsonl"
MULTIPLE_SUBJECTS_NAME = "multiple"

_DIGEST_RE = re.compile(r"[0-9a-f]{64}")
_FIELD_SPLIT_RE = re.compile(r"\s+")


class ErrorKind(str, Enum):
    MALFORMED_ENCODING = "malformed-encoding"
    MISSING_NAME = "missing-name"
    MALFORMED_DIGEST = "malformed-digest"
    DUPLICATE_SUBJECT = "duplicate-subject"
    INVALID_OUTPUT_PATH = "invalid-output-path"
    MALFORMED_CONTEXT = "malformed-context"
    SIGNING_FAILURE = "signing-failure"
    LOGGING_FAILURE = "logging-failure"
    IO_FAILURE = "io-failure"


class AttestationError(Exception):
    """Base class for every failure the attestation pipeline reports."""

    kind: ErrorKind

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class SubjectParseError(AttestationError):
    def __init__(self, kind: ErrorKind, message: str, line: Optional[int] = None) -> None:
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(kind, message)
        self.line = line


class ContextError(AttestationError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.MALFORMED_CONTEXT, message)


class SigningError(AttestationError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.SIGNING_FAILURE, message)


class TransparencyLogError(AttestationError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.LOGGING_FAILURE, message)


class InvalidPathError(AttestationError):
    def __init__(self, message: str, path: str) -> None:
        super().__init__(ErrorKind.INVALID_OUTPUT_PATH, message)
        self.path = path


class WriteError(AttestationError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.IO_FAILURE, message)


class Subject(BaseModel):
    name: str = Field(min_length=1)
    digest: Dict[str, str] = Field(min_length=1)
    model_config = ConfigDict(extra="forbid", frozen=True)


class Signature(BaseModel):
    keyid: str = ""
    sig: str
    cert: Optional[str] = None
    model_config = ConfigDict(extra="forbid", frozen=True)


class SignedBundle(BaseModel):
    payload_type: str = Field(DSSE_PAYLOAD_TYPE, alias="payloadType")
    payload: str
    signatures: List[Signature] = Field(min_length=1)
    transparency_log: LogEntryRef = Field(alias="transparencyLog")

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    def envelope(self) -> Dict[str, Any]:
        return {
            "payloadType": self.payload_type,
            "payload": self.payload,
            "signatures": [s.model_dump(exclude_none=True) for s in self.signatures],
        }

    def statement(self) -> Dict[str, Any]:
        return json.loads(base64.b64decode(self.payload))

    def to_jsonl(self) -> str:
        return json.dumps(
            self.model_dump(by_alias=True, exclude_none=True),
            sort_keys=True,
            separators=(",", ":"),
        )


class PathVerdict(str, Enum):
    VALID = "valid"
    INVALID_EXTENSION = "invalid-extension"
    ESCAPES_ROOT = "escapes-allowed-root"
    UNRESOLVABLE = "unresolvable"


class OutputTarget(BaseModel):
    requested: str
    path: Path
    verdict: PathVerdict
    model_config = ConfigDict(extra="forbid", frozen=True)

    def ensure_valid(self) -> Path:
        if self.verdict == PathVerdict.INVALID_EXTENSION:
            raise InvalidPathError(
                f"invalid provenance path {self.requested!r}: must end with {PROVENANCE_SUFFIX}",
                self.requested,
            )
        if self.verdict == PathVerdict.ESCAPES_ROOT:
            raise InvalidPathError(
                f"invalid provenance path {self.requested!r}: outside of the working directory",
                self.requested,
            )
        if self.verdict == PathVerdict.UNRESOLVABLE:
            raise InvalidPathError(
                f"invalid provenance path {self.requested!r}: cannot be resolved",
                self.requested,
            )
        return self.path


def parse_subjects(encoded: str) -> List[Subject]:
    """Parse a base64-encoded ``sha256sum``-style listing into subjects.

    Each non-blank line is ``<sha256 hex> <name>``; names may contain spaces.
    The first malformed line aborts the whole parse.
    """
    try:
        raw = base64.b64decode(encoded.replace("\r", "").replace("\n", ""), validate=True)
        text = raw.decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise SubjectParseError(
            ErrorKind.MALFORMED_ENCODING, f"subjects are not valid base64: {exc}"
        ) from exc

    subjects: List[Subject] = []
    seen = set()
    for number, line in enumerate(text.split("\n"), start=1):
        line = line.strip()
        if not line:
            continue
        parts = _FIELD_SPLIT_RE.split(line, maxsplit=1)
        if len(parts) < 2:
            raise SubjectParseError(ErrorKind.MISSING_NAME, "no subject name", line=number)
        token, name = parts[0], parts[1].strip()
        if not _DIGEST_RE.fullmatch(token):
            raise SubjectParseError(
                ErrorKind.MALFORMED_DIGEST, f"invalid sha256 digest: {token!r}", line=number
            )
        if name in seen:
            raise SubjectParseError(
                ErrorKind.DUPLICATE_SUBJECT, f"duplicate subject: {name!r}", line=number
            )
        seen.add(name)
        subjects.append(Subject(name=name, digest={"sha256": token}))
    logger.debug("parsed %d subject(s)", len(subjects))
    return subjects


def format_subjects(subjects: Sequence[Subject]) -> str:
    lines = [f"{s.digest['sha256']}  {s.name}" for s in subjects]
    return "".join(f"{line}\n" for line in lines)


def make_statement(subjects: Sequence[Subject], predicate: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "_type": STATEMENT_TYPE,
        "subject": [s.model_dump() for s in subjects],
        "predicateType": SLSA_PREDICATE_TYPE,
        "predicate": predicate,
    }


def canonical_json(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def pae(payload_type: str, payload: bytes) -> bytes:
    """DSSE v1 pre-authentication encoding; what a signer actually signs."""
    kind = payload_type.encode("utf-8")
    return b"DSSEv1 %d %s %d %s" % (len(kind), kind, len(payload), payload)


def build_and_sign(
    subjects: Sequence[Subject],
    *,
    context_provider: ContextProvider,
    signer: Signer,
    transparency_log: TransparencyLog,
) -> SignedBundle:
    try:
        predicate = context_provider.get()
    except AttestationError:
        raise
    except Exception as exc:
        raise ContextError(f"build context unavailable: {exc}") from exc

    payload = canonical_json(make_statement(subjects, predicate))
    logger.debug("signing statement over %d subject(s)", len(subjects))
    try:
        signed: SignResult = signer.sign(payload)
    except Exception as exc:
        raise SigningError(f"signing failed: {exc}") from exc

    signature = Signature(
        keyid=signed.keyid,
        sig=base64.b64encode(signed.signature).decode("ascii"),
        cert=signed.certificate,
    )
    envelope = {
        "payloadType": DSSE_PAYLOAD_TYPE,
        "payload": base64.b64encode(payload).decode("ascii"),
        "signatures": [signature.model_dump(exclude_none=True)],
    }
    try:
        entry = transparency_log.record(canonical_json(envelope))
    except Exception as exc:
        raise TransparencyLogError(f"transparency log upload failed: {exc}") from exc
    logger.info("transparency log entry created at index %d", entry.log_index)

    return SignedBundle(
        payload_type=DSSE_PAYLOAD_TYPE,
        payload=envelope["payload"],
        signatures=[signature],
        transparency_log=entry,
    )


def default_output_name(subjects: Sequence[Subject]) -> str:
    if len(subjects) == 1:
        return f"{subjects[0].name}{PROVENANCE_SUFFIX}"
    return f"{MULTIPLE_SUBJECTS_NAME}{PROVENANCE_SUFFIX}"


def resolve_output_path(
    subjects: Sequence[Subject], explicit_path: Optional[str], allowed_root: Path
) -> OutputTarget:
    requested = explicit_path if explicit_path else default_output_name(subjects)
    root = allowed_root.resolve()
    try:
        path = (root / requested).resolve()
    except (OSError, ValueError):
        return OutputTarget(
            requested=requested, path=root / requested, verdict=PathVerdict.UNRESOLVABLE
        )
    if explicit_path and not explicit_path.endswith(PROVENANCE_SUFFIX):
        verdict = PathVerdict.INVALID_EXTENSION
    elif path == root or root not in path.parents:
        verdict = PathVerdict.ESCAPES_ROOT
    else:
        verdict = PathVerdict.VALID
    return OutputTarget(requested=requested, path=path, verdict=verdict)


def write_bundle(bundle: SignedBundle, path: Path) -> Path:
    """Write ``bundle`` as a new JSON line of ``path`` via temp file + rename.

    Existing lines are carried over; the destination is replaced in one step.
    """
    line = (bundle.to_jsonl() + "\n").encode("utf-8")
    tmp_name: Optional[str] = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        existing = path.read_bytes() if path.exists() else b""
        if existing and not existing.endswith(b"\n"):
            existing += b"\n"
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        with os.fdopen(fd, "wb") as f:
            f.write(existing + line)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as exc:
        raise WriteError(f"unable to write provenance to {path}: {exc}") from exc
    finally:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
    logger.info("wrote provenance to %s", path)
    return path


def resolve_and_write(
    bundle: SignedBundle,
    subjects: Sequence[Subject],
    explicit_path: Optional[str],
    allowed_root: Path,
) -> Path:
    path = resolve_output_path(subjects, explicit_path, allowed_root).ensure_valid()
    return write_bundle(bundle, path)


def run_pipeline(
    encoded_subjects: str,
    *,
    context_provider: ContextProvider,
    signer: Signer,
    transparency_log: TransparencyLog,
    explicit_path: Optional[str] = None,
    allowed_root: Optional[Path] = None,
) -> Path:
    root = allowed_root if allowed_root is not None else Path.cwd()
    subjects = parse_subjects(encoded_subjects)
    if not subjects:
        logger.warning("no subjects given; attesting an empty subject list")
    # Path errors must surface before anything is signed or logged.
    path = resolve_output_path(subjects, explicit_path, root).ensure_valid()
    bundle = build_and_sign(
        subjects,
        context_provider=context_provider,
        signer=signer,
        transparency_log=transparency_log,
    )
    return write_bundle(bundle, path)
