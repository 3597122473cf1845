import json
from typing import Any, Dict, List

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from provattest.core import DSSE_PAYLOAD_TYPE, pae
from provattest.signing import LogEntryRef, SignResult


class StaticContextProvider:
    def __init__(self, predicate: Dict[str, Any]) -> None:
        self.predicate = predicate
        self.calls = 0

    def get(self) -> Dict[str, Any]:
        self.calls += 1
        return self.predicate


class StubSigner:
    def __init__(self) -> None:
        self.key = ec.generate_private_key(ec.SECP256R1())
        self.payloads: List[bytes] = []

    def sign(self, payload: bytes) -> SignResult:
        self.payloads.append(payload)
        signature = self.key.sign(pae(DSSE_PAYLOAD_TYPE, payload), ec.ECDSA(hashes.SHA256()))
        return SignResult(signature=signature, keyid="test-key")

    def verify(self, payload: bytes, signature: bytes) -> None:
        self.key.public_key().verify(
            signature, pae(DSSE_PAYLOAD_TYPE, payload), ec.ECDSA(hashes.SHA256())
        )


class StubTransparencyLog:
    def __init__(self) -> None:
        self.entries: List[Dict[str, Any]] = []

    def record(self, envelope: bytes) -> LogEntryRef:
        self.entries.append(json.loads(envelope))
        return LogEntryRef(
            log_index=len(self.entries) - 1,
            log_id="test-log",
            integrated_time=1700000000,
        )


class FailingSigner:
    def sign(self, payload: bytes) -> SignResult:
        raise RuntimeError("fulcio unavailable")


class FailingTransparencyLog:
    def record(self, envelope: bytes) -> LogEntryRef:
        raise RuntimeError("rekor unavailable")


@pytest.fixture
def context_provider() -> StaticContextProvider:
    return StaticContextProvider({"builder": {"id": "https://example.com/builder@v1"}})


@pytest.fixture
def signer() -> StubSigner:
    return StubSigner()


@pytest.fixture
def transparency_log() -> StubTransparencyLog:
    return StubTransparencyLog()


@pytest.fixture
def failing_signer() -> FailingSigner:
    return FailingSigner()


@pytest.fixture
def failing_transparency_log() -> FailingTransparencyLog:
    return FailingTransparencyLog()
