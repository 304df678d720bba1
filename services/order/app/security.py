"""
Order Service — JWT の検証と発行

HS256 で署名されたトークンを共有鍵で検証し、(identity, roles) を取り出す。
  - identity: "id" クレーム、無ければ "sub"
  - roles:    "role" / "roles" クレーム（文字列でもリストでもよい）
exp は必須。issuer / audience は設定されている場合のみ検証する。
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable

from jose import ExpiredSignatureError, JWTError, jwt

from .errors import InvalidToken
from .models import Principal


def _as_list(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


class TokenAuthenticator:
    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        issuer: str | None = None,
        audience: str | None = None,
    ) -> None:
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience

    def authenticate(self, token: str) -> Principal:
        try:
            claims = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                audience=self.audience,
                options={"verify_aud": self.audience is not None, "require_exp": True},
            )
        except ExpiredSignatureError as e:
            raise InvalidToken("Token has expired") from e
        except JWTError as e:
            raise InvalidToken("Invalid token") from e

        identity = claims.get("id") or claims.get("sub")
        if not identity:
            raise InvalidToken("Token carries no identity claim")

        roles = _as_list(claims.get("role")) + _as_list(claims.get("roles"))
        return Principal(identity=str(identity), roles=frozenset(roles))

    def issue(
        self,
        identity: str,
        roles: Iterable[str] = (),
        expires_in: timedelta = timedelta(minutes=60),
        **extra_claims,
    ) -> str:
        """トークンを発行する（運用ツール・テスト用）。"""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": identity,
            "role": list(roles),
            "iat": int(now.timestamp()),
            "exp": int((now + expires_in).timestamp()),
            **extra_claims,
        }
        if self.issuer:
            payload.setdefault("iss", self.issuer)
        if self.audience:
            payload.setdefault("aud", self.audience)
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)
