"""IdentityStore -- 当前用户身份

持久化身份只有在带有有效 token 时才被接受，否则删除并回退到匿名身份。
通过 override 注入的身份是临时的，不写入存储。
"""

import base64
import binascii
import json
import time
from collections.abc import Callable

import structlog

from .config import SyncConfig
from .models.message import Identity
from .store.snapshots import SnapshotRepository

log = structlog.get_logger()

ADMIN_TOKEN = "smartadmin"


def _decode_segment(segment: str) -> dict:
    padded = segment + "=" * (-len(segment) % 4)
    return json.loads(base64.urlsafe_b64decode(padded))


def is_token_valid(token: str | None, now: Callable[[], float] = time.time) -> bool:
    """校验 token

    - 缺失 token 不视为非法（调用方另行要求 token 存在）
    - 管理员 token 直接接受
    - 非 JWT 格式（不是三段）视为非法
    - payload 带 exp 时要求未过期；payload 无法解析时宽松接受
    """
    if not token:
        return True
    if token == ADMIN_TOKEN:
        return True

    parts = token.split(".")
    if len(parts) != 3:
        log.warning("identity_token_not_jwt", segments=len(parts))
        return False

    try:
        payload = _decode_segment(parts[1])
        exp = float(payload["exp"]) if isinstance(payload, dict) and payload.get("exp") else None
    except (binascii.Error, UnicodeDecodeError, TypeError, ValueError) as e:
        log.warning("identity_token_undecodable", error=str(e))
        return True

    if exp is None:
        return True
    valid = exp > now()
    if not valid:
        log.warning("identity_token_expired", exp=exp)
    return valid


def is_authenticated(identity: Identity, now: Callable[[], float] = time.time) -> bool:
    """已认证身份：必须带 token 且 token 有效"""
    if not identity.token:
        return False
    return is_token_valid(identity.token, now)


class IdentityStore:
    """当前用户身份存储"""

    def __init__(
        self,
        repository: SnapshotRepository,
        config: SyncConfig,
        override: Identity | None = None,
        now: Callable[[], float] = time.time,
    ) -> None:
        self._repository = repository
        self._config = config
        self._override = override
        self._now = now
        self._user: Identity = override or config.anonymous

    @property
    def user(self) -> Identity:
        return self._user

    @property
    def is_anonymous(self) -> bool:
        return self._user.id == self._config.anonymous.id

    async def load(self) -> Identity:
        """从存储加载身份；无效或损坏的身份会被删除"""
        if self._override is not None:
            return self._user

        stored = await self._repository.load_identity()
        if stored is None:
            self._user = self._config.anonymous
        elif is_authenticated(stored, self._now):
            self._user = stored
        else:
            log.warning("identity_invalid_removed", user_id=stored.id)
            await self._repository.remove_identity()
            self._user = self._config.anonymous
        return self._user

    async def set(self, identity: Identity) -> Identity:
        """设置当前身份；缺失 id 时由邮箱前缀生成"""
        if not identity.id:
            local_part = identity.email.split("@")[0]
            identity = identity.model_copy(update={"id": f"user-{local_part}"})
        self._user = identity
        if self._override is None:
            await self._repository.save_identity(identity)
        log.info("identity_updated", user_id=identity.id)
        return identity

    async def revert_to_anonymous(self) -> Identity:
        """回退匿名身份并清除持久化身份"""
        self._user = self._config.anonymous
        await self._repository.remove_identity()
        log.info("identity_reverted_to_anonymous")
        return self._user
