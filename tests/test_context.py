import json

import pytest

from provattest.context import (
    DEFAULT_BUILDER_ID,
    GENERIC_BUILD_TYPE,
    GitHubContextProvider,
    parse_github_context,
    slsa_predicate_from_context,
)
from provattest.core import ContextError, ErrorKind

GITHUB_CONTEXT = {
    "actor": "octocat",
    "event_name": "push",
    "ref": "refs/heads/main",
    "ref_type": "branch",
    "repository": "octo-org/octo-repo",
    "repository_id": 123456,
    "repository_owner": "octo-org",
    "run_attempt": "2",
    "run_id": "4242",
    "run_number": "17",
    "server_url": "https://github.com",
    "sha": "8f4b7d9a1c2e3f405162738495a6b7c8d9e0f1a2",
    "workflow": "release",
    "token": "must-not-leak",
    "event": {"head_commit": {"message": "ignored"}},
}


def test_empty_context_yields_minimal_predicate(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GITHUB_CONTEXT", "{}")
    predicate = GitHubContextProvider().get()
    assert predicate["builder"] == {"id": DEFAULT_BUILDER_ID}
    assert predicate["buildType"] == GENERIC_BUILD_TYPE
    assert predicate["invocation"] == {"parameters": {}, "environment": {}}
    assert predicate["materials"] == []
    assert "buildInvocationID" not in predicate["metadata"]


def test_full_context_populates_invocation_and_materials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CUSTOM_CONTEXT", json.dumps(GITHUB_CONTEXT))
    provider = GitHubContextProvider("CUSTOM_CONTEXT", builder_id="https://example.com/builder@v2")
    predicate = provider.get()

    uri = "git+https://github.com/octo-org/octo-repo@refs/heads/main"
    assert predicate["builder"] == {"id": "https://example.com/builder@v2"}
    assert predicate["invocation"]["configSource"] == {
        "uri": uri,
        "digest": {"sha1": GITHUB_CONTEXT["sha"]},
        "entryPoint": "release",
    }
    environment = predicate["invocation"]["environment"]
    assert environment["github_actor"] == "octocat"
    assert environment["github_repository_id"] == "123456"
    assert environment["github_sha1"] == GITHUB_CONTEXT["sha"]
    assert "must-not-leak" not in json.dumps(predicate)
    assert predicate["metadata"]["buildInvocationID"] == "4242-2"
    assert predicate["materials"] == [{"uri": uri, "digest": {"sha1": GITHUB_CONTEXT["sha"]}}]


def test_context_provider_requires_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GITHUB_CONTEXT", raising=False)
    with pytest.raises(ContextError) as excinfo:
        GitHubContextProvider().get()
    assert excinfo.value.kind == ErrorKind.MALFORMED_CONTEXT


@pytest.mark.parametrize("raw", ["", "   ", "not json", "[1, 2]", '"string"'])
def test_parse_github_context_rejects_malformed(raw: str) -> None:
    with pytest.raises(ContextError):
        parse_github_context(raw)


def test_build_invocation_id_defaults_attempt() -> None:
    context = parse_github_context(json.dumps({"run_id": 99}))
    predicate = slsa_predicate_from_context(context, DEFAULT_BUILDER_ID)
    assert predicate["metadata"]["buildInvocationID"] == "99-1"
