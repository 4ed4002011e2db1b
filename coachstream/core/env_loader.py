import os
from pathlib import Path

ENV_FILE_VAR = "COACH_ENV_FILE"


def _project_env_path() -> Path:
    custom_path = os.getenv(ENV_FILE_VAR, "").strip()
    if custom_path:
        return Path(custom_path)
    return Path(__file__).resolve().parents[2] / ".env"


def parse_env_line(raw_line: str) -> tuple[str, str] | None:
    """Parse one ``KEY=value`` line; comments, blanks and bare words yield None."""
    line = raw_line.strip()
    if line.startswith("export "):
        line = line[len("export "):].lstrip()
    if not line or line.startswith("#") or "=" not in line:
        return None

    key, value = line.split("=", 1)
    key = key.strip()
    value = value.strip()
    if not key:
        return None

    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]
    return key, value


def load_project_env(override: bool = False, env_path: Path | None = None) -> dict[str, str]:
    """Load ``.env`` into ``os.environ`` and return the pairs that were applied."""
    path = env_path or _project_env_path()
    if not path.exists():
        return {}

    applied: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8-sig").splitlines():
        parsed = parse_env_line(raw_line)
        if parsed is None:
            continue
        key, value = parsed
        if override or key not in os.environ:
            os.environ[key] = value
            applied[key] = value
    return applied
