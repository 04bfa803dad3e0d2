import unittest
import uuid
from unittest.mock import patch

from fastapi import HTTPException

from apis.generation import (
    GenerationTaskCreateRequest,
    RegenerateRequest,
    create_generation_task,
    get_ai_status,
    get_generation_task,
    get_generation_task_status,
    list_generation_tasks,
    regenerate_generation_task,
)
from apis.materials import (
    KnowledgePointCreateRequest,
    MaterialCreateRequest,
    create_knowledge_point_api,
    create_material_api,
    get_material_api,
    list_materials_api,
)
from apis.questions import list_questions
from apis.review import (
    BatchIdsRequest,
    BatchManualReviewRequest,
    SubmitRequest,
    batch_ai_review_api,
    batch_manual_review_api,
    submit_for_review,
)
from core.db import DB
from core.generation_worker import WorkerSettings, run_generation_task
from core.models.generation_task import GenerationTask
from core.models.knowledge_point import KnowledgePoint
from core.models.material import Material
from core.models.question import Question

MATERIAL = "绩效管理是组织与员工就工作目标达成共识并持续沟通改进的过程，其原则包括公平公正与持续反馈。" * 5

MOCK_PROVIDER = {
    "provider_name": "openai-compatible",
    "base_url": "mock://local",
    "model_name": "mock",
    "api_key": "mock",
    "temperature": 70,
    "timeout": 30,
    "mock": True,
}


class GenerationApiTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        DB.create_tables()
        self.owner = f"gen_api_{uuid.uuid4().hex[:8]}"
        self.user = {"username": self.owner, "role": "user"}
        self.kp_ids = []
        result = await create_material_api(
            MaterialCreateRequest(title="绩效管理", content=MATERIAL),
            current_user=self.user,
        )
        self.assertEqual(result.get("code"), 0)
        self.material_id = result["data"]["id"]

    async def asyncTearDown(self):
        session = DB.get_session()
        try:
            task_ids = [x.id for x in session.query(GenerationTask.id).filter(GenerationTask.owner_id == self.owner).all()]
            if task_ids:
                session.query(Question).filter(Question.task_id.in_(task_ids)).delete(synchronize_session=False)
            session.query(GenerationTask).filter(GenerationTask.owner_id == self.owner).delete(synchronize_session=False)
            session.query(Material).filter(Material.owner_id == self.owner).delete(synchronize_session=False)
            if self.kp_ids:
                session.query(KnowledgePoint).filter(KnowledgePoint.id.in_(self.kp_ids)).delete(synchronize_session=False)
            session.commit()
        finally:
            session.close()

    async def _create_task(self, **overrides):
        payload = {
            "material_id": self.material_id,
            "question_count": 2,
            "question_types": ["single-choice", "判断题"],
            "difficulty": "easy",
        }
        payload.update(overrides)
        with patch("apis.generation.submit_generation_task") as submit:
            result = await create_generation_task(GenerationTaskCreateRequest(**payload), current_user=self.user)
        return result, submit

    async def test_material_detail_and_list(self):
        detail = await get_material_api(self.material_id, current_user=self.user)
        self.assertEqual(detail["data"]["content"], MATERIAL.strip())
        listing = await list_materials_api(limit=50, current_user=self.user)
        self.assertEqual([x["id"] for x in listing["data"]], [self.material_id])
        self.assertNotIn("content", listing["data"][0])

        with self.assertRaises(HTTPException) as ctx:
            await get_material_api(self.material_id, current_user={"username": "someone_else"})
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_create_task_enqueues_and_returns_pending(self):
        result, submit = await self._create_task()
        self.assertEqual(result.get("code"), 0)
        data = result["data"]
        self.assertEqual(data["status"], "pending")
        self.assertEqual(data["progress"], 0)
        submit.assert_called_once_with(data["id"])

        detail = await get_generation_task(data["id"], current_user=self.user)
        self.assertEqual(detail["data"]["question_types"], ["单选题", "判断题"])

    async def test_create_task_validation(self):
        with self.assertRaises(HTTPException) as ctx:
            await self._create_task(question_types=["essay"])
        self.assertEqual(ctx.exception.status_code, 400)

        with self.assertRaises(HTTPException) as ctx:
            await self._create_task(question_count=10000)
        self.assertEqual(ctx.exception.status_code, 400)

        with self.assertRaises(HTTPException) as ctx:
            await self._create_task(knowledge_point_ids=["missing-kp"])
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_foreign_material_is_not_found(self):
        with patch("apis.generation.submit_generation_task") as submit:
            with self.assertRaises(HTTPException) as ctx:
                await create_generation_task(
                    GenerationTaskCreateRequest(material_id=self.material_id, question_count=1),
                    current_user={"username": f"other_{uuid.uuid4().hex[:8]}"},
                )
        self.assertEqual(ctx.exception.status_code, 404)
        submit.assert_not_called()

    async def test_task_lifecycle_with_knowledge_points(self):
        kp = await create_knowledge_point_api(
            KnowledgePointCreateRequest(title=f"绩效原则_{uuid.uuid4().hex[:6]}", level="全员熟悉"),
            current_user=self.user,
        )
        self.assertEqual(kp.get("code"), 0)
        self.kp_ids.append(kp["data"]["id"])

        result, _ = await self._create_task(knowledge_point_ids=self.kp_ids)
        task_id = result["data"]["id"]

        with patch("core.generation_service.provider_config", return_value=MOCK_PROVIDER):
            ok, message = run_generation_task(task_id, settings=WorkerSettings(retry_delay_seconds=0))
        self.assertTrue(ok, message)

        status = await get_generation_task_status(task_id, current_user=self.user)
        data = status["data"]
        self.assertEqual(data["status"], "completed")
        self.assertEqual(data["progress"], 100)
        self.assertEqual(data["generated_count"], 2)
        self.assertEqual(data["success_rate"], 100)
        self.assertEqual(len(data["questions"]), 2)
        self.assertEqual(data["questions"][0]["difficulty"], "易")
        self.assertEqual(data["questions"][0]["knowledge_level"], "全员熟悉")
        self.assertEqual(data["questions"][1]["options"], {"A": "正确", "B": "错误"})

        listing = await list_generation_tasks(status="completed", limit=30, current_user=self.user)
        self.assertEqual(listing["data"]["total"], 1)
        self.assertNotIn("result", listing["data"]["list"][0])

        with patch("apis.generation.submit_generation_task") as submit:
            again = await regenerate_generation_task(task_id, current_user=self.user)
        self.assertEqual(again["data"]["status"], "pending")
        self.assertEqual(again["data"]["progress"], 0)
        submit.assert_called_once_with(task_id)

    async def test_deleted_material_fails_task(self):
        result, _ = await self._create_task()
        task_id = result["data"]["id"]
        session = DB.get_session()
        try:
            session.query(Material).filter(Material.id == self.material_id).delete(synchronize_session=False)
            session.commit()
        finally:
            session.close()

        ok, message = run_generation_task(task_id, settings=WorkerSettings(retry_delay_seconds=0))
        self.assertFalse(ok)
        status = await get_generation_task_status(task_id, current_user=self.user)
        self.assertEqual(status["data"]["status"], "failed")
        self.assertEqual(status["data"]["progress"], 0)
        self.assertEqual(status["data"]["error"], message)

    async def test_short_material_completes_with_zero(self):
        result, _ = await self._create_task()
        task_id = result["data"]["id"]
        session = DB.get_session()
        try:
            session.query(Material).filter(Material.id == self.material_id).update(
                {Material.content: "太短"}, synchronize_session=False
            )
            session.commit()
        finally:
            session.close()

        with patch("core.generation_service.provider_config", return_value=MOCK_PROVIDER):
            ok, _ = run_generation_task(task_id, settings=WorkerSettings(retry_delay_seconds=0))
        # 每次生成都因内容不足失败，任务以 0 题完成
        self.assertTrue(ok)
        status = await get_generation_task_status(task_id, current_user=self.user)
        self.assertEqual(status["data"]["generated_count"], 0)
        self.assertEqual(status["data"]["questions"], [])

    async def test_end_to_end_pipeline(self):
        result, _ = await self._create_task(question_count=3, question_types=["single-choice"], difficulty="medium")
        task_id = result["data"]["id"]

        with patch("core.generation_service.provider_config", return_value=MOCK_PROVIDER):
            run_generation_task(task_id, settings=WorkerSettings(retry_delay_seconds=0))
        status = await get_generation_task_status(task_id, current_user=self.user)
        self.assertEqual(status["data"]["status"], "completed")
        candidates = status["data"]["questions"]
        self.assertEqual(len(candidates), 3)

        submitted = await submit_for_review(SubmitRequest(task_id=task_id, questions=candidates), current_user=self.user)
        ids = [q["id"] for q in submitted["data"]["questions"]]
        self.assertTrue(all(q["status"] == "ai_reviewing" for q in submitted["data"]["questions"]))

        with patch("core.review_service.ai_review_restricted", return_value=True):
            reviewed = await batch_ai_review_api(BatchIdsRequest(question_ids=ids), current_user=self.user)
        passed_ids = [x["id"] for x in reviewed["data"]["results"] if x.get("passed")]
        self.assertEqual(len(passed_ids), 3)

        approved = await batch_manual_review_api(
            BatchManualReviewRequest(question_ids=passed_ids, action="approve"),
            current_user=self.user,
        )
        self.assertEqual(approved["data"]["updated"], 3)

        bank = await list_questions(
            page=1, limit=100, question_type="单选题", difficulty="中", keyword="某区域HRBP",
            current_user={"username": "someone_else"},
        )
        bank_ids = {q["id"] for q in bank["data"]["list"]}
        self.assertTrue(set(passed_ids).issubset(bank_ids))

    async def test_partial_regenerate_replaces_selected_questions(self):
        result, _ = await self._create_task(question_count=3, question_types=["single-choice"])
        task_id = result["data"]["id"]
        with patch("core.generation_service.provider_config", return_value=MOCK_PROVIDER):
            run_generation_task(task_id, settings=WorkerSettings(retry_delay_seconds=0))
        status = await get_generation_task_status(task_id, current_user=self.user)
        submitted = await submit_for_review(
            SubmitRequest(task_id=task_id, questions=status["data"]["questions"]),
            current_user=self.user,
        )
        ids = [q["id"] for q in submitted["data"]["questions"]]

        with patch("apis.generation.submit_generation_task") as submit:
            with self.assertRaises(HTTPException) as ctx:
                await regenerate_generation_task(
                    task_id,
                    RegenerateRequest(question_ids=ids[:2]),
                    current_user={"username": "someone_else"},
                )
            self.assertEqual(ctx.exception.status_code, 404)
            with self.assertRaises(HTTPException) as ctx:
                await regenerate_generation_task(task_id, RegenerateRequest(question_ids=["missing"]), current_user=self.user)
            self.assertEqual(ctx.exception.status_code, 404)
            submit.assert_not_called()

            again = await regenerate_generation_task(task_id, RegenerateRequest(question_ids=ids[:2]), current_user=self.user)
        self.assertEqual(again["data"]["status"], "pending")
        self.assertEqual(again["data"]["question_count"], 2)
        submit.assert_called_once_with(task_id)

        session = DB.get_session()
        try:
            remaining = [x.id for x in session.query(Question.id).filter(Question.task_id == task_id).all()]
        finally:
            session.close()
        self.assertEqual(remaining, [ids[2]])

        with patch("core.generation_service.provider_config", return_value=MOCK_PROVIDER):
            ok, message = run_generation_task(task_id, settings=WorkerSettings(retry_delay_seconds=0))
        self.assertTrue(ok, message)
        status = await get_generation_task_status(task_id, current_user=self.user)
        self.assertEqual(status["data"]["generated_count"], 2)

    async def test_status_of_foreign_task_is_not_found(self):
        result, _ = await self._create_task()
        task_id = result["data"]["id"]
        for handler in (get_generation_task_status, get_generation_task, regenerate_generation_task):
            with self.assertRaises(HTTPException) as ctx:
                await handler(task_id, current_user={"username": "someone_else"})
            self.assertEqual(ctx.exception.status_code, 404)

    async def test_ai_status_masks_key(self):
        with patch("core.generation_service.cfg.get", side_effect=lambda key, default=None: {
            "ai.provider.api_key": "sk-1234567890abcdef",
            "ai.provider.base_url": "https://llm.example.com/v1",
        }.get(key, default)):
            result = await get_ai_status(current_user=self.user)
        data = result["data"]
        self.assertEqual(data["api_key"], "sk-1***********cdef")
        self.assertFalse(data["mock"])
        self.assertIn("queue_size", data)
        self.assertIn("workers_started", data)


if __name__ == "__main__":
    unittest.main()
