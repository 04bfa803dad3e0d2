import logging
import unittest

from fastapi import HTTPException

from core.auth import create_access_token, decode_access_token, get_current_user
from core.events import E, log_event
from core.log import TraceIdFilter, get_logger, trace_ctx


class AuthTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_token_round_trip(self):
        token = create_access_token("alice", role="admin")
        user = await get_current_user(token)
        self.assertEqual(user, {"username": "alice", "role": "admin"})

    async def test_missing_token_is_unauthorized(self):
        with self.assertRaises(HTTPException) as ctx:
            await get_current_user(None)
        self.assertEqual(ctx.exception.status_code, 401)

    def test_expired_token_is_unauthorized(self):
        token = create_access_token("alice", expires_minutes=-5)
        with self.assertRaises(HTTPException) as ctx:
            decode_access_token(token)
        self.assertEqual(ctx.exception.detail, "登录已过期")

    def test_garbage_token_is_unauthorized(self):
        with self.assertRaises(HTTPException) as ctx:
            decode_access_token("not-a-jwt")
        self.assertEqual(ctx.exception.status_code, 401)


class EventLogTestCase(unittest.TestCase):
    def test_log_event_format_carries_trace_id(self):
        logger = get_logger("tests.events")
        with trace_ctx("task1234") as tid:
            with self.assertLogs("tests.events", level="INFO") as captured:
                log_event(logger, E.GENERATION_TASK_PROGRESS, task_id="t001", progress=50)
        self.assertEqual(tid, "task1234")
        self.assertIn("event=generation.task.progress | task_id=t001 | progress=50", captured.output[0])

    def test_trace_filter_tags_records(self):
        trace_filter = TraceIdFilter()
        record = logging.LogRecord("tests.events", logging.INFO, __file__, 1, "msg", None, None)
        with trace_ctx("  generation-task-abcdef123  ") as tid:
            trace_filter.filter(record)
        self.assertEqual(tid, "generation-task-")
        self.assertEqual(record.trace_id, "generation-task-")

        with trace_ctx() as generated:
            self.assertEqual(len(generated), 8)
        trace_filter.filter(record)
        self.assertEqual(record.trace_id, "-")


if __name__ == "__main__":
    unittest.main()
