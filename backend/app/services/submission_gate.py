from __future__ import annotations

from typing import Optional

from app.schemas.review import ReviewStatus


class ReviewLockedError(PermissionError):
    """已提交且未解锁的评审不可编辑"""


class SubmissionGate:
    """
    Draft --(submit)--> Submitted --(显式确认的 unlock)--> 可编辑

    中文注释:
    1) 只是客户端侧的门禁；服务端 RPC 才是权威，它仍可能拒绝编辑（按普通错误展示）。
    2) unlock 后下一次保存显式带 status="draft"，让服务端行与本地保持一致，
       不存在“本地已撤回、服务端仍是 submitted”的分叉状态。
    """

    def __init__(self, status: ReviewStatus = "draft"):
        self._status: ReviewStatus = status
        self._unlocked = False

    @property
    def status(self) -> ReviewStatus:
        return self._status

    @property
    def unlocked(self) -> bool:
        return self._unlocked

    @property
    def is_read_only(self) -> bool:
        return self._status == "submitted" and not self._unlocked

    def sync(self, server_status: ReviewStatus) -> None:
        """服务端状态为准；解锁中的会话在服务端确认回到 draft 前保留解锁标记"""
        self._status = server_status
        if server_status == "draft":
            self._unlocked = False

    def ensure_editable(self) -> None:
        if self.is_read_only:
            raise ReviewLockedError("Review has been submitted; unlock it before editing")

    def mark_submitted(self) -> None:
        self._status = "submitted"
        self._unlocked = False

    def unlock(self, *, confirmed: bool) -> None:
        if self._status != "submitted":
            return
        if not confirmed:
            raise ValueError("Unlocking a submitted review requires confirmation")
        self._unlocked = True

    def relock(self) -> None:
        self._unlocked = False

    def save_status(self) -> Optional[ReviewStatus]:
        """草稿自动保存时发给 upsert 的 status：None 表示保持服务端当前状态"""
        if self._status == "submitted" and self._unlocked:
            return "draft"
        return None
