"""
Order Service — 認可ポリシー

操作ごとに必要なロールを不変のテーブルで定義し、起動時にアプリへ渡す。
ロールが空の操作は「認証済みなら誰でも」。
owner_scoped の操作は、管理者以外は自分の注文にしかアクセスできない。
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from .models import Order, Principal

ADMIN = "Admin"


@dataclass(frozen=True)
class AccessPolicy:
    rules: Mapping[str, frozenset[str]]
    owner_scoped: frozenset[str] = field(default_factory=frozenset)
    admin_role: str = ADMIN

    def __post_init__(self) -> None:
        object.__setattr__(self, "rules", MappingProxyType(dict(self.rules)))

    def allows(self, operation: str, principal: Principal) -> bool:
        if operation not in self.rules:
            # 未登録の操作は拒否
            return False
        required = self.rules[operation]
        if not required:
            return True
        return any(principal.has_role(role) for role in required)

    def can_access(self, operation: str, principal: Principal, order: Order) -> bool:
        if operation not in self.owner_scoped:
            return True
        return principal.has_role(self.admin_role) or order.user_id == principal.identity


DEFAULT_POLICY = AccessPolicy(
    rules={
        "list_orders": frozenset({ADMIN}),
        "get_order": frozenset(),
        "create_order": frozenset(),
        "update_order": frozenset({ADMIN}),
        "delete_order": frozenset({ADMIN}),
    },
    owner_scoped=frozenset({"get_order"}),
)
