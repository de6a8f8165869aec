from __future__ import annotations

from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from assessor.core.errors import ConfigError


def load_dotenv_if_present(path: str | Path | None = None) -> Path | None:
    """Load provider credentials and ASSESSOR_* settings from a `.env` file.

    With ``path`` the file must exist. Without it, `.env` is searched for
    from the current working directory upwards and skipped if absent.
    Variables already set in the environment are never overridden.

    Returns the file loaded, or None.
    """
    if path is not None:
        p = Path(path).expanduser().resolve()
        if not p.is_file():
            raise ConfigError(f"env file not found: {p}")
    else:
        found = find_dotenv(filename=".env", usecwd=True)
        if not found:
            return None
        p = Path(found).resolve()

    load_dotenv(dotenv_path=str(p), override=False)
    return p
