from pathlib import Path

from dotenv import load_dotenv


def load_env(path: Path | None = None) -> bool:
    """Load .env from the project root if present.

    Existing environment variables win over values from the file.
    Returns True when a file was loaded.
    """
    env_path = path or Path.cwd() / ".env"
    if not env_path.exists():
        return False
    return load_dotenv(dotenv_path=env_path, override=False)
