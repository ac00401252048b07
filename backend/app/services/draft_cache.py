from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from app.schemas.review import DraftSnapshot, ReviewState

logger = logging.getLogger("corpsreview.draft_cache")

_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


def draft_key(application_id: str) -> str:
    return f"review-draft:{application_id}"


class LocalDraftCache:
    """
    本地草稿缓存：按 application 存一份未保存的 score/comments/ratings 快照。

    中文注释:
    1) 非权威、尽力而为：IO 失败只记日志，不影响编辑流程。
    2) 数据损坏（非法 JSON / 结构不符）视为“没有草稿”，直接丢弃文件，不向用户报错。
    3) 写入同步完成（不去抖），保证去抖保存触发前进程重启也不丢数据。
    4) 不存在单独的 "submitted" 本地键：本地状态不得声称服务端并不存在的提交。
    """

    def __init__(self, directory: str | os.PathLike[str]):
        self._dir = Path(directory)

    def _path(self, application_id: str) -> Path:
        name = _SAFE_KEY.sub("_", draft_key(str(application_id)))
        return self._dir / f"{name}.json"

    def put(self, application_id: str, state: ReviewState | DraftSnapshot) -> None:
        snapshot = DraftSnapshot(
            score=state.score,
            comments=state.comments,
            ratings=dict(state.ratings),
            saved_at=datetime.now(timezone.utc),
        )
        path = self._path(application_id)
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self._dir, prefix=".draft-", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(snapshot.model_dump_json())
            os.replace(tmp, path)
        except OSError as e:
            logger.warning("[DraftCache] write failed (application_id=%s): %s", application_id, e)

    def get(self, application_id: str) -> Optional[DraftSnapshot]:
        path = self._path(application_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("[DraftCache] read failed (application_id=%s): %s", application_id, e)
            return None

        try:
            return DraftSnapshot.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.warning("[DraftCache] discarding malformed draft (application_id=%s): %s", application_id, e)
            self.remove(application_id)
            return None

    def remove(self, application_id: str) -> None:
        try:
            self._path(application_id).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("[DraftCache] remove failed (application_id=%s): %s", application_id, e)
