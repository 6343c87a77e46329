"""編集コンテキスト（操作ユーザー・自動編集フラグ・現在時刻）.

暗黙の「現在ユーザー/現在時刻」グローバルは使わず、各ステージへ明示的に渡す。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum


class UserLevel(IntEnum):
    MEMBER = 20
    PRIVILEGED = 30
    JANITOR = 35
    MODERATOR = 40
    ADMIN = 50


@dataclass(frozen=True)
class Actor:
    id: int
    name: str = ""
    level: UserLevel = UserLevel.MEMBER

    @property
    def is_janitor(self) -> bool:
        return self.level >= UserLevel.JANITOR

    @property
    def is_admin(self) -> bool:
        return self.level >= UserLevel.ADMIN


SYSTEM_ACTOR = Actor(id=1, name="system", level=UserLevel.ADMIN)


@dataclass(frozen=True)
class EditContext:
    """1回の編集リクエストのスコープで不変なコンテキスト.

    Attributes:
        actor: 編集者
        automated: システム/Bot による自動編集か（タグ数上限の免除・バージョン統合判定に使う）
        now: 編集時刻
        do_not_version: True の場合バージョンを作らない（メンテナンス用）
    """

    actor: Actor
    automated: bool = False
    now: datetime = field(default_factory=lambda: datetime.now(UTC))
    do_not_version: bool = False
