import unittest
import uuid
from unittest.mock import patch

from core.db import DB
from core.generation_worker import (
    WorkerSettings,
    process_generation_task,
    process_pending_generation_tasks,
    progress_for,
)
from core.material_service import create_knowledge_point, create_material
from core.models.generation_task import GenerationTask
from core.models.knowledge_point import KnowledgePoint
from core.models.material import Material
from core.task_store import (
    TASK_STATUS_COMPLETED,
    TASK_STATUS_FAILED,
    TASK_STATUS_PENDING,
    TASK_STATUS_PROCESSING,
    create_task,
    task_result,
    update_task_progress,
)

MATERIAL = "绩效管理是组织与员工就工作目标达成共识并持续沟通改进的过程。" * 10

FAST = WorkerSettings(max_retries=3, retry_delay_seconds=0, attempt_factor=2)


def _generated(question_type):
    if question_type == "判断题":
        return {
            "stem": "绩效管理的主要目的在于帮助员工持续改进工作表现。（ ）",
            "options": {"A": "正确", "B": "错误"},
            "correct_answer": "A",
            "analysis": {"textbook": "教材原文：...", "explanation": "试题分析：...", "conclusion": "【本题答案为 正确】"},
            "quality_score": 0.9,
        }
    return {
        "stem": "以下关于绩效管理目的的描述，哪项是正确的。（ ）",
        "options": {"A": "甲", "B": "乙", "C": "丙", "D": "丁"},
        "correct_answer": "A",
        "analysis": {"textbook": "教材原文：...", "explanation": "试题分析：...", "conclusion": "【本题答案为 A】"},
        "quality_score": 0.8,
    }


class RecordingGenerator:
    """按调用顺序记录参数；fail_pattern 中为 True 的调用抛出异常，replies 中指定的调用直接返回给定值。"""

    def __init__(self, fail_pattern=None, always_fail=False, replies=None):
        self.calls = []
        self.fail_pattern = list(fail_pattern or [])
        self.always_fail = always_fail
        self.replies = dict(replies or {})

    def __call__(self, content, question_type, difficulty, knowledge_point=None):
        index = len(self.calls)
        self.calls.append((question_type, difficulty, knowledge_point))
        if self.always_fail or (index < len(self.fail_pattern) and self.fail_pattern[index]):
            raise RuntimeError("模型调用失败")
        if index in self.replies:
            return self.replies[index]
        return _generated(question_type)


class GenerationWorkerTestCase(unittest.TestCase):
    def setUp(self):
        DB.create_tables()
        self.session = DB.get_session()
        self.owner = f"worker_{uuid.uuid4().hex[:8]}"
        self.material = create_material(self.session, self.owner, "绩效管理", MATERIAL)
        self.kp_ids = [
            create_knowledge_point(self.session, f"绩效目标_{uuid.uuid4().hex[:6]}").id,
            create_knowledge_point(self.session, f"绩效沟通_{uuid.uuid4().hex[:6]}", level="全员掌握").id,
        ]

    def tearDown(self):
        self.session.rollback()
        self.session.query(GenerationTask).filter(GenerationTask.owner_id == self.owner).delete(synchronize_session=False)
        self.session.query(Material).filter(Material.owner_id == self.owner).delete(synchronize_session=False)
        self.session.query(KnowledgePoint).filter(KnowledgePoint.id.in_(self.kp_ids)).delete(synchronize_session=False)
        self.session.commit()
        self.session.close()

    def _task(self, count=3, types=None, kp_ids=None, material_id=None):
        return create_task(
            self.session,
            owner_id=self.owner,
            material_id=material_id or self.material.id,
            question_count=count,
            question_types=types or ["单选题", "判断题"],
            difficulty="hard",
            knowledge_point_ids=kp_ids if kp_ids is not None else self.kp_ids,
        )

    def test_progress_mapping(self):
        self.assertEqual(progress_for(0, 4), 10)
        self.assertEqual(progress_for(1, 3), 36)
        self.assertEqual(progress_for(4, 4), 90)
        self.assertEqual(progress_for(0, 0), 10)

    def test_all_slots_succeed(self):
        task = self._task(count=3)
        generator = RecordingGenerator()
        ok, message = process_generation_task(self.session, task.id, settings=FAST, generator=generator)
        self.assertTrue(ok, message)

        self.session.refresh(task)
        self.assertEqual(task.status, TASK_STATUS_COMPLETED)
        self.assertEqual(task.progress, 100)
        self.assertIsNotNone(task.completed_at)
        result = task_result(task)
        self.assertEqual(result["generated_count"], 3)
        self.assertEqual(result["success_rate"], 100)
        self.assertEqual(result["attempts"], 3)

        questions = result["questions"]
        self.assertEqual([q["question_type"] for q in questions], ["单选题", "判断题", "单选题"])
        self.assertEqual([q["knowledge_point_id"] for q in questions], [self.kp_ids[0], self.kp_ids[1], self.kp_ids[0]])
        self.assertEqual(questions[1]["knowledge_level"], "全员掌握")
        for q in questions:
            self.assertTrue(q["id"].startswith("temp_"))
            self.assertEqual(q["status"], "pending")
            self.assertEqual(q["difficulty"], "难")
            self.assertEqual(q["task_id"], task.id)
        self.assertEqual(generator.calls[0][1], "难")

    def test_failed_slot_keeps_its_type(self):
        task = self._task(count=2)
        generator = RecordingGenerator(fail_pattern=[True, False, False])
        ok, _ = process_generation_task(self.session, task.id, settings=FAST, generator=generator)
        self.assertTrue(ok)
        self.assertEqual([c[0] for c in generator.calls], ["单选题", "单选题", "判断题"])
        result = task_result(self.session.get(GenerationTask, task.id))
        self.assertEqual(result["generated_count"], 2)
        self.assertEqual(result["attempts"], 3)

    def test_empty_reply_is_retried(self):
        task = self._task(count=1, types=["单选题"])
        generator = RecordingGenerator(replies={0: {}, 1: {"stem": "", "options": {"A": "甲"}, "correct_answer": "A"}})
        settings = WorkerSettings(max_retries=3, retry_delay_seconds=0, attempt_factor=3)
        ok, _ = process_generation_task(self.session, task.id, settings=settings, generator=generator)
        self.assertTrue(ok)
        self.assertEqual(len(generator.calls), 3)
        result = task_result(self.session.get(GenerationTask, task.id))
        self.assertEqual(result["generated_count"], 1)
        self.assertEqual(result["attempts"], 3)
        self.assertTrue(result["questions"][0]["stem"])

    def test_none_reply_uses_slot_retries(self):
        task = self._task(count=2)
        generator = RecordingGenerator(replies={i: None for i in range(10)})
        with patch("core.generation_worker.time.sleep") as sleep:
            ok, _ = process_generation_task(
                self.session,
                task.id,
                settings=WorkerSettings(max_retries=3, retry_delay_seconds=0.5, attempt_factor=2),
                generator=generator,
            )
        self.assertTrue(ok)
        # 第一个槽位用满 3 次重试后放弃，剩余 1 次仍落在同一槽位
        self.assertEqual([c[0] for c in generator.calls], ["单选题"] * 4)
        self.assertEqual(sleep.call_count, 2)
        result = task_result(self.session.get(GenerationTask, task.id))
        self.assertEqual(result["generated_count"], 0)
        self.assertEqual(result["attempts"], 4)

    def test_all_attempts_fail_completes_with_zero(self):
        task = self._task(count=3)
        generator = RecordingGenerator(always_fail=True)
        ok, _ = process_generation_task(self.session, task.id, settings=FAST, generator=generator)
        self.assertTrue(ok)

        self.session.refresh(task)
        self.assertEqual(task.status, TASK_STATUS_COMPLETED)
        result = task_result(task)
        self.assertEqual(result["generated_count"], 0)
        self.assertEqual(result["success_rate"], 0)
        self.assertEqual(result["questions"], [])
        self.assertLessEqual(len(generator.calls), 6)

    def test_partial_success_reports_rate(self):
        task = self._task(count=4, types=["单选题"], kp_ids=[])
        # 前两题成功，之后全部失败
        generator = RecordingGenerator(fail_pattern=[False, False] + [True] * 20)
        ok, _ = process_generation_task(self.session, task.id, settings=FAST, generator=generator)
        self.assertTrue(ok)
        result = task_result(self.session.get(GenerationTask, task.id))
        self.assertEqual(result["generated_count"], 2)
        self.assertEqual(result["success_rate"], 50)
        self.assertEqual(len(generator.calls), 8)
        self.assertIsNone(result["questions"][0]["knowledge_point_id"])
        self.assertEqual(result["questions"][0]["knowledge_level"], "HR掌握")

    def test_progress_never_decreases(self):
        task = self._task(count=4)
        generator = RecordingGenerator(fail_pattern=[False, True, True, True, False, False, False])
        with patch("core.generation_worker.update_task_progress", wraps=update_task_progress) as spy:
            ok, _ = process_generation_task(self.session, task.id, settings=FAST, generator=generator)
        self.assertTrue(ok)
        values = [c[0][2] for c in spy.call_args_list]
        self.assertTrue(values)
        self.assertEqual(values, sorted(values))
        self.assertTrue(all(10 <= v <= 90 for v in values))

    def test_retry_waits_between_attempts(self):
        task = self._task(count=1, types=["单选题"])
        generator = RecordingGenerator(fail_pattern=[True])
        settings = WorkerSettings(max_retries=3, retry_delay_seconds=0.5, attempt_factor=2)
        with patch("core.generation_worker.time.sleep") as sleep:
            ok, _ = process_generation_task(self.session, task.id, settings=settings, generator=generator)
        self.assertTrue(ok)
        sleep.assert_called_once_with(0.5)

    def test_terminal_task_is_not_reprocessed(self):
        task = self._task(count=1)
        process_generation_task(self.session, task.id, settings=FAST, generator=RecordingGenerator())
        generator = RecordingGenerator()
        ok, message = process_generation_task(self.session, task.id, settings=FAST, generator=generator)
        self.assertTrue(ok)
        self.assertEqual(message, "任务已处理")
        self.assertEqual(generator.calls, [])

    def test_claimed_task_is_refused(self):
        task = self._task(count=1)
        task.status = TASK_STATUS_PROCESSING
        self.session.commit()
        generator = RecordingGenerator()
        ok, message = process_generation_task(self.session, task.id, settings=FAST, generator=generator)
        self.assertFalse(ok)
        self.assertEqual(message, "任务状态已变更")
        self.assertEqual(generator.calls, [])

    def test_missing_task(self):
        ok, message = process_generation_task(self.session, "not-exists", settings=FAST, generator=RecordingGenerator())
        self.assertFalse(ok)
        self.assertEqual(message, "任务不存在")

    def test_missing_material_fails_task(self):
        task = self._task(count=2, material_id="missing-material")
        ok, message = process_generation_task(self.session, task.id, settings=FAST, generator=RecordingGenerator())
        self.assertFalse(ok)
        self.assertEqual(message, "教材不存在")

        self.session.refresh(task)
        self.assertEqual(task.status, TASK_STATUS_FAILED)
        self.assertEqual(task.progress, 0)
        self.assertEqual(task.error_message, "教材不存在")
        result = task_result(task)
        self.assertEqual(result["error"], "教材不存在")
        self.assertIn("timestamp", result)

    def test_store_error_fails_task(self):
        task = self._task(count=2)
        with patch("core.generation_worker.update_task_progress", side_effect=RuntimeError("disk full")):
            ok, message = process_generation_task(self.session, task.id, settings=FAST, generator=RecordingGenerator())
        self.assertFalse(ok)
        self.assertIn("disk full", message)
        self.session.refresh(task)
        self.assertEqual(task.status, TASK_STATUS_FAILED)

    def test_process_pending_tasks(self):
        first = self._task(count=1)
        second = self._task(count=1, material_id="missing-material")
        with patch("core.generation_worker.list_pending_tasks", return_value=[first, second]):
            summary = process_pending_generation_tasks(self.session, limit=5, settings=FAST, generator=RecordingGenerator())
        self.assertEqual(summary["total"], 2)
        self.assertEqual(summary["success"], 1)
        self.assertEqual(summary["failed"], 1)
        statuses = {x["id"]: x["status"] for x in summary["details"]}
        self.assertEqual(statuses[first.id], TASK_STATUS_COMPLETED)
        self.assertEqual(statuses[second.id], TASK_STATUS_FAILED)


class TaskStoreTestCase(unittest.TestCase):
    def setUp(self):
        DB.create_tables()
        self.session = DB.get_session()
        self.owner = f"store_{uuid.uuid4().hex[:8]}"

    def tearDown(self):
        self.session.rollback()
        self.session.query(GenerationTask).filter(GenerationTask.owner_id == self.owner).delete(synchronize_session=False)
        self.session.commit()
        self.session.close()

    def _task(self):
        return create_task(self.session, self.owner, "m-1", 2, ["单选题"])

    def test_claim_is_exclusive(self):
        from core.task_store import claim_task

        task = self._task()
        other = DB.get_session()
        try:
            other_task = other.get(GenerationTask, task.id)
            self.assertTrue(claim_task(self.session, task))
            self.assertFalse(claim_task(other, other_task))
        finally:
            other.close()
        self.assertEqual(task.status, TASK_STATUS_PROCESSING)
        self.assertEqual(task.progress, 10)
        self.assertIsNotNone(task.started_at)

    def test_progress_requires_processing_and_no_regression(self):
        from core.task_store import claim_task

        task = self._task()
        self.assertFalse(update_task_progress(self.session, task.id, 50))
        claim_task(self.session, task)
        self.assertTrue(update_task_progress(self.session, task.id, 50))
        self.assertFalse(update_task_progress(self.session, task.id, 30))
        self.session.refresh(task)
        self.assertEqual(task.progress, 50)

    def test_complete_requires_processing(self):
        from core.task_store import complete_task

        task = self._task()
        self.assertFalse(complete_task(self.session, task.id, {"generated_count": 0}))
        self.session.refresh(task)
        self.assertEqual(task.status, TASK_STATUS_PENDING)

    def test_fail_missing_task_does_not_raise(self):
        from core.task_store import fail_task

        self.assertFalse(fail_task(self.session, "not-exists", "boom"))

    def test_reset_task_returns_to_pending(self):
        from core.task_store import fail_task, reset_task, task_status_payload

        task = self._task()
        fail_task(self.session, task.id, "教材不存在")
        self.session.refresh(task)
        self.assertEqual(task_status_payload(task)["error"], "教材不存在")

        reset_task(self.session, task)
        self.assertEqual(task.status, TASK_STATUS_PENDING)
        self.assertEqual(task.progress, 0)
        self.assertIsNone(task.result_json)
        self.assertNotIn("error", task_status_payload(task))


if __name__ == "__main__":
    unittest.main()
