from dataclasses import dataclass
from enum import Enum


class PrincipalType(str, Enum):
    WORKER = "worker"
    SCHEDULER = "scheduler"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str


def parse_bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", maxsplit=1)[1].strip()
    return token or None
