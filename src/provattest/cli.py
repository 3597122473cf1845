import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import typer
from rich.console import Console
from rich.logging import RichHandler

from provattest import __version__
from provattest.context import DEFAULT_BUILDER_ID, DEFAULT_CONTEXT_ENV, GitHubContextProvider
from provattest.core import AttestationError, ErrorKind, run_pipeline
from provattest.signing import ContextProvider, SigstoreSession, Signer, TransparencyLog

app = typer.Typer(name="provattest", help="Signed SLSA provenance for build artifacts")
console = Console()

_stderr = Console(file=sys.stderr)
logging.basicConfig(format="%(message)s", datefmt="[%X]", handlers=[RichHandler(console=_stderr)])
_logger = logging.getLogger(__name__)

# Configure the package logger rather than the root logger so third-party
# clients stay quiet by default.
_package_logger = logging.getLogger("provattest")
_package_logger.setLevel(os.environ.get("PROVATTEST_LOGLEVEL", "INFO").upper())

EXIT_CODES: Dict[ErrorKind, int] = {
    ErrorKind.MALFORMED_ENCODING: 10,
    ErrorKind.MISSING_NAME: 11,
    ErrorKind.MALFORMED_DIGEST: 12,
    ErrorKind.DUPLICATE_SUBJECT: 13,
    ErrorKind.INVALID_OUTPUT_PATH: 20,
    ErrorKind.MALFORMED_CONTEXT: 30,
    ErrorKind.SIGNING_FAILURE: 40,
    ErrorKind.LOGGING_FAILURE: 41,
    ErrorKind.IO_FAILURE: 50,
}


def _emit(payload: Dict[str, Any], as_json: bool) -> None:
    if as_json:
        typer.echo(json.dumps(payload, sort_keys=True))
        return
    console.print_json(data=payload)


def _root_dir() -> Path:
    return Path.cwd()


def _collaborators(
    *,
    context_env: str,
    builder_id: str,
    identity_token: Optional[str],
    identity_token_env: str,
    interactive_oidc: bool,
    staging: bool,
    offline: bool,
) -> Tuple[ContextProvider, Signer, TransparencyLog]:
    session = SigstoreSession(
        identity_token=identity_token,
        identity_token_env=identity_token_env,
        interactive_oidc=interactive_oidc,
        staging=staging,
        offline=offline,
    )
    return GitHubContextProvider(context_env, builder_id), session, session


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Generate and sign SLSA provenance for artifacts listed by digest."""
    if verbose:
        _package_logger.setLevel("DEBUG")


@app.command()
def attest(
    subjects: str = typer.Option(
        ...,
        envvar="PROVATTEST_SUBJECTS",
        help="Base64-encoded sha256sum output listing the artifacts to attest",
    ),
    signature: Optional[str] = typer.Option(
        None, help="Output path for the provenance (must end in .intoto.jsonl)"
    ),
    context_env: str = typer.Option(
        DEFAULT_CONTEXT_ENV, help="Environment variable holding the build context JSON"
    ),
    builder_id: str = typer.Option(
        DEFAULT_BUILDER_ID, envvar="PROVATTEST_BUILDER_ID", help="SLSA builder id"
    ),
    identity_token: Optional[str] = typer.Option(None, help="OIDC token for keyless signing"),
    identity_token_env: str = typer.Option(
        "SIGSTORE_ID_TOKEN", help="Environment variable containing OIDC token"
    ),
    interactive_oidc: bool = typer.Option(
        False, help="Acquire OIDC token interactively via browser"
    ),
    staging: bool = typer.Option(False, help="Use Sigstore staging instance"),
    offline: bool = typer.Option(False, help="Use cached trust root only"),
    json_output: bool = typer.Option(False, "--json", help="Deterministic JSON output"),
):
    """Sign a provenance statement for the given subjects and write it as JSON Lines."""
    try:
        context_provider, signer, transparency_log = _collaborators(
            context_env=context_env,
            builder_id=builder_id,
            identity_token=identity_token,
            identity_token_env=identity_token_env,
            interactive_oidc=interactive_oidc,
            staging=staging,
            offline=offline,
        )
        path = run_pipeline(
            subjects,
            context_provider=context_provider,
            signer=signer,
            transparency_log=transparency_log,
            explicit_path=signature,
            allowed_root=_root_dir(),
        )
        _emit({"ok": True, "provenance_path": str(path), "staging": staging}, json_output)
    except AttestationError as e:
        _logger.debug("attest failed", exc_info=True)
        _emit(
            {"ok": False, "error": str(e), "kind": e.kind.value, "command": "attest"},
            json_output,
        )
        raise typer.Exit(code=EXIT_CODES[e.kind])
    except Exception as e:
        _emit({"ok": False, "error": str(e), "command": "attest"}, json_output)
        raise typer.Exit(code=1)


@app.command()
def version(
    json_output: bool = typer.Option(False, "--json", help="Deterministic JSON output"),
):
    """Print version information."""
    _emit({"ok": True, "version": __version__}, json_output)


if __name__ == "__main__":
    app()
