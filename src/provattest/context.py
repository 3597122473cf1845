from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from provattest.core import ContextError

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_ENV = "GITHUB_CONTEXT"
DEFAULT_BUILDER_ID = (
    "https://github.com/slsa-framework/slsa-github-generator/"
    ".github/workflows/generator_generic_slsa3.yml@refs/tags/v1.0.0"
)
GENERIC_BUILD_TYPE = "https://github.com/slsa-framework/slsa-github-generator/generic@v1"
DEFAULT_SERVER_URL = "https://github.com"

# Context keys copied into invocation.environment, prefixed with "github_".
ENVIRONMENT_KEYS = (
    "actor",
    "base_ref",
    "event_name",
    "head_ref",
    "ref",
    "ref_type",
    "repository",
    "repository_id",
    "repository_owner",
    "repository_owner_id",
    "run_attempt",
    "run_id",
    "run_number",
    "workflow",
)


class GitHubContext(BaseModel):
    actor: Optional[str] = None
    base_ref: Optional[str] = None
    event_name: Optional[str] = None
    head_ref: Optional[str] = None
    ref: Optional[str] = None
    ref_type: Optional[str] = None
    repository: Optional[str] = None
    repository_id: Optional[str] = None
    repository_owner: Optional[str] = None
    repository_owner_id: Optional[str] = None
    run_attempt: Optional[str] = None
    run_id: Optional[str] = None
    run_number: Optional[str] = None
    server_url: Optional[str] = None
    sha: Optional[str] = None
    workflow: Optional[str] = None

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    def source_uri(self) -> Optional[str]:
        if not self.repository:
            return None
        server = (self.server_url or DEFAULT_SERVER_URL).rstrip("/")
        uri = f"git+{server}/{self.repository}"
        if self.ref:
            uri = f"{uri}@{self.ref}"
        return uri


def parse_github_context(raw: Optional[str]) -> GitHubContext:
    if raw is None or not raw.strip():
        raise ContextError("build context is empty")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ContextError(f"build context is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ContextError("build context must be a JSON object")
    try:
        return GitHubContext.model_validate(payload)
    except ValidationError as e:
        raise ContextError(str(e))


def slsa_predicate_from_context(context: GitHubContext, builder_id: str) -> Dict[str, Any]:
    """Build a SLSA v0.2 provenance predicate for the generic builder."""
    invocation: Dict[str, Any] = {"parameters": {}}
    environment: Dict[str, Any] = {}
    for key in ENVIRONMENT_KEYS:
        value = getattr(context, key)
        if value is not None:
            environment[f"github_{key}"] = value
    if context.sha:
        environment["github_sha1"] = context.sha
    invocation["environment"] = environment

    materials: List[Dict[str, Any]] = []
    uri = context.source_uri()
    if uri:
        config_source: Dict[str, Any] = {"uri": uri}
        if context.sha:
            config_source["digest"] = {"sha1": context.sha}
        if context.workflow:
            config_source["entryPoint"] = context.workflow
        invocation["configSource"] = config_source
        material: Dict[str, Any] = {"uri": uri}
        if context.sha:
            material["digest"] = {"sha1": context.sha}
        materials.append(material)

    metadata: Dict[str, Any] = {
        "completeness": {"parameters": True, "environment": False, "materials": False},
        "reproducible": False,
    }
    if context.run_id:
        metadata["buildInvocationID"] = f"{context.run_id}-{context.run_attempt or '1'}"

    return {
        "builder": {"id": builder_id},
        "buildType": GENERIC_BUILD_TYPE,
        "invocation": invocation,
        "metadata": metadata,
        "materials": materials,
    }


class GitHubContextProvider:
    def __init__(
        self, env_var: str = DEFAULT_CONTEXT_ENV, builder_id: str = DEFAULT_BUILDER_ID
    ) -> None:
        self.env_var = env_var
        self.builder_id = builder_id

    def get(self) -> Dict[str, Any]:
        raw = os.getenv(self.env_var)
        if raw is None:
            raise ContextError(f"{self.env_var} environment variable is not set")
        context = parse_github_context(raw)
        logger.debug("loaded build context for %s", context.repository or "<unknown repository>")
        return slsa_predicate_from_context(context, self.builder_id)
