# repository/namespaces.py
from typing import Final

ROOT: Final[str] = "tubevault"

JOBS: Final[str] = f"{ROOT}:jobs"
JOBS_BY_REF: Final[str] = f"{JOBS}:by-ref"  # outputRef -> job id
OWNERS: Final[str] = f"{ROOT}:owners"
SESSIONS: Final[str] = f"{ROOT}:sessions"  # bearer token -> owner id
