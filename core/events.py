"""
core/events.py — 结构化事件日志

提供统一的事件类型常量（E 类）和 log_event() 格式化方法。
生成任务、审核流转、批量操作均通过此模块记录，确保日志可 grep / 统计。

格式：event=xxx | key=val | key=val

用法：
    from core.log import get_logger
    from core.events import log_event, E

    logger = get_logger(__name__)
    log_event(logger, E.GENERATION_TASK_PROGRESS, task_id="t001", progress=50)
    # 输出：event=generation.task.progress | task_id=t001 | progress=50
"""

import logging
from typing import Any


class E:
    """结构化事件类型常量，按功能模块分组。"""

    # ── 生成任务 Generation ────────────────────────────────────────────────────
    GENERATION_TASK_CREATE = "generation.task.create"
    GENERATION_TASK_ENQUEUE = "generation.task.enqueue"
    GENERATION_TASK_CLAIM = "generation.task.claim"
    GENERATION_TASK_SKIP = "generation.task.skip"
    GENERATION_TASK_PROGRESS = "generation.task.progress"
    GENERATION_TASK_COMPLETE = "generation.task.complete"
    GENERATION_TASK_FAIL = "generation.task.fail"
    GENERATION_TASK_RESET = "generation.task.reset"
    GENERATION_SLOT_RETRY = "generation.slot.retry"
    GENERATION_SLOT_ABANDON = "generation.slot.abandon"
    GENERATION_ATTEMPTS_EXHAUSTED = "generation.attempts.exhausted"

    # ── AI 服务 Provider ───────────────────────────────────────────────────────
    AI_GENERATE_CALL = "ai.generate.call"
    AI_GENERATE_FAIL = "ai.generate.fail"
    AI_SCORE_FAIL = "ai.score.fail"

    # ── 试题 Question ──────────────────────────────────────────────────────────
    QUESTION_SUBMIT = "question.submit"
    QUESTION_CREATE = "question.create"
    QUESTION_DELETE = "question.delete"
    QUESTION_UPDATE = "question.update"
    QUESTION_EXPORT = "question.export"

    # ── 审核 Review ────────────────────────────────────────────────────────────
    REVIEW_AI = "review.ai"
    REVIEW_MANUAL = "review.manual"
    REVIEW_APPROVE = "review.approve"
    REVIEW_REJECT = "review.reject"
    REVIEW_NOT_ELIGIBLE = "review.not_eligible"

    # ── 批量 Batch ─────────────────────────────────────────────────────────────
    BATCH_AI_REVIEW = "batch.ai_review"
    BATCH_MANUAL_REVIEW = "batch.manual_review"
    BATCH_APPROVE = "batch.approve"
    BATCH_REJECT = "batch.reject"
    BATCH_DELETE = "batch.delete"
    BATCH_ITEM_FAIL = "batch.item.fail"

    # ── 教材 Material ──────────────────────────────────────────────────────────
    MATERIAL_CREATE = "material.create"

    # ── 系统 System ────────────────────────────────────────────────────────────
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_DB_INIT = "system.db_init"
    SYSTEM_QUEUE_START = "system.queue.start"


def log_event(
    logger: logging.Logger,
    event: str,
    level: str = "info",
    **fields: Any,
) -> None:
    """
    记录结构化事件日志，格式：event=xxx | key=val | key=val

    示例：
        log_event(logger, E.GENERATION_SLOT_RETRY, level="warning",
                  task_id="t001", slot=2, retry=1, error="timeout")
        # → event=generation.slot.retry | task_id=t001 | slot=2 | retry=1 | error=timeout
    """
    parts = [f"event={event}"]
    for k, v in fields.items():
        sv = str(v) if not isinstance(v, str) else v
        # 截断超长字段，避免单行日志过大
        if len(sv) > 300:
            sv = sv[:297] + "..."
        parts.append(f"{k}={sv}")
    msg = " | ".join(parts)
    getattr(logger, level)(msg, stacklevel=2)
