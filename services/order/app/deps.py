"""
Order Service — FastAPI 依存関係

リクエストごとに一度だけトークンを検証して Principal を作り、
ポリシーで操作の可否を判定してからハンドラへ渡す。
認証に失敗したリクエストはワークフローまで届かない。
"""

import logging

from fastapi import Depends, Header, HTTPException, Request

from .errors import InvalidToken
from .models import Principal
from .workflow import OrderWorkflow

logger = logging.getLogger(__name__)


def get_workflow(request: Request) -> OrderWorkflow:
    return request.app.state.workflow


def get_principal(
    request: Request, authorization: str | None = Header(None)
) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=401,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = authorization.split(" ", 1)[1].strip()
    try:
        principal = request.app.state.authenticator.authenticate(token)
    except InvalidToken as e:
        logger.warning("Rejected bearer token: %s", e)
        raise HTTPException(
            status_code=401, detail=str(e), headers={"WWW-Authenticate": "Bearer"}
        ) from e
    return principal


def require(operation: str):
    """操作に必要なロールをポリシーテーブルで確認する依存関係を返す。"""

    def checker(
        request: Request, principal: Principal = Depends(get_principal)
    ) -> Principal:
        if not request.app.state.policy.allows(operation, principal):
            logger.warning(
                "User %s (roles: %s) denied %s",
                principal.identity, ", ".join(sorted(principal.roles)), operation,
            )
            raise HTTPException(status_code=403, detail="Forbidden")
        return principal

    return checker
