"""Password gate for the administrative `/setup` surface (HTTP Basic).

The username is ignored; only the password is compared, in constant time.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from .config import _env
from .errors import AuthInvalidError, AuthRequiredError, WrapperError


SETUP_REALM = "OpenClaw Setup"

_basic = HTTPBasic(auto_error=False, realm=SETUP_REALM)


class SetupPasswordMissingError(WrapperError):
    status_code = 500

    def __init__(
        self,
        message: str = "SETUP_PASSWORD is not set. Set it in the deployment environment before using /setup.",
        **kwargs,
    ):
        super().__init__(message, **kwargs)


@dataclass(frozen=True)
class SetupAuthPolicy:
    password: Optional[str]
    realm: str = SETUP_REALM

    @property
    def enabled(self) -> bool:
        return bool(self.password)

    def check(self, credentials: Optional[HTTPBasicCredentials]) -> None:
        if not self.password:
            raise SetupPasswordMissingError()
        if credentials is None:
            raise AuthRequiredError()
        supplied = str(credentials.password or "").encode("utf-8")
        if not secrets.compare_digest(supplied, self.password.encode("utf-8")):
            raise AuthInvalidError()

    def challenge_headers(self) -> dict[str, str]:
        return {"WWW-Authenticate": f'Basic realm="{self.realm}"'}


def load_setup_auth_policy_from_env() -> SetupAuthPolicy:
    return SetupAuthPolicy(password=_env("SETUP_PASSWORD"))


async def require_setup_auth(credentials: Optional[HTTPBasicCredentials] = Depends(_basic)) -> None:
    from .service import get_wrapper_service

    get_wrapper_service().auth_policy.check(credentials)
