from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping

from .errors import CredentialResolutionError
from .types import CredentialRef

_INLINE_KINDS = frozenset({"inline", "plaintext"})


def _read_key_file(credential_ref: CredentialRef) -> str:
    path = Path(credential_ref.identifier).expanduser()
    try:
        value = path.read_text(encoding="utf-8").strip()
    except OSError as e:
        raise CredentialResolutionError(
            f"Cannot read API key file {str(path)!r}: {e.strerror or e}",
            credential_ref=credential_ref.to_redacted_string(),
        ) from e
    if not value:
        raise CredentialResolutionError(
            f"API key file {str(path)!r} is empty.",
            credential_ref=credential_ref.to_redacted_string(),
        )
    return value


def resolve_credential(credential_ref: CredentialRef, *, env: Mapping[str, str] | None = None) -> str:
    """
    Turn a credential reference into the secret it points at.

    Kinds: `env:<VAR>`, `file:<path>` (stripped file contents) and `inline:<value>` for local stubs.
    """

    kind = credential_ref.kind
    if kind == "env":
        source = os.environ if env is None else env
        value = (source.get(credential_ref.identifier) or "").strip()
        if not value:
            raise CredentialResolutionError(
                f"Missing required environment variable '{credential_ref.identifier}'.",
                credential_ref=credential_ref.to_redacted_string(),
            )
        return value

    if kind == "file":
        return _read_key_file(credential_ref)

    if kind in _INLINE_KINDS:
        if not credential_ref.identifier:
            raise CredentialResolutionError(
                "Missing inline credential value.",
                credential_ref=credential_ref.to_redacted_string(),
            )
        return credential_ref.identifier

    raise CredentialResolutionError(
        f"Unsupported credential_ref kind '{kind}'; use env:, file: or inline:.",
        credential_ref=credential_ref.to_redacted_string(),
    )
