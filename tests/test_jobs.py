from __future__ import annotations

import asyncio
import unittest

from ig_taxonomy.jobs import ALREADY_RUNNING_NOTICE, JobProgress, JobRegistry
from ig_taxonomy.run_log import RunLogger


class TestJobProgress(unittest.TestCase):
    def test_counters_never_move_backwards(self) -> None:
        progress = JobProgress(kind="embeddings")
        progress.reset(total=10)
        progress.update(processed=5, updated=3)
        progress.update(processed=4, updated=1)

        snap = progress.snapshot()
        self.assertEqual(snap["processed"], 5)
        self.assertEqual(snap["updated"], 3)
        self.assertEqual(snap["status"], "running")

    def test_messages_are_deduplicated(self) -> None:
        progress = JobProgress(kind="cleanup")
        progress.update(message="Analyzing")
        progress.update(message="Analyzing")
        progress.update(message="Deleting", percent=150)

        self.assertEqual(progress.messages, ["Analyzing", "Deleting"])
        self.assertEqual(progress.message, "Deleting")
        self.assertEqual(progress.percent, 100)


class TestJobRegistry(unittest.IsolatedAsyncioTestCase):
    async def test_second_start_gets_notice(self) -> None:
        registry = JobRegistry()
        gate = asyncio.Event()

        async def _job(progress: JobProgress) -> str:
            progress.update(processed=1)
            await gate.wait()
            return "ok"

        first = registry.start("extraction", _job, total=3)
        second = registry.start("extraction", _job, total=3)

        self.assertNotIn("notice", first)
        self.assertEqual(second["notice"], ALREADY_RUNNING_NOTICE)
        self.assertEqual(second["status"], "running")
        self.assertTrue(registry.is_running("extraction"))

        # Other kinds are independent.
        self.assertEqual(registry.snapshot("cleanup")["status"], "idle")

        gate.set()
        snap = await registry.wait("extraction")
        self.assertEqual(snap["status"], "done")
        self.assertEqual(registry.progress("extraction").result, "ok")
        self.assertIsNotNone(snap["finished_at"])

    async def test_failure_is_reported_as_error_status(self) -> None:
        log = RunLogger()
        registry = JobRegistry(logger=log)

        async def _job(progress: JobProgress) -> None:
            raise RuntimeError("provider unreachable")

        snap = await registry.run("geocoding", _job)

        self.assertEqual(snap["status"], "error")
        self.assertEqual(snap["error"], "provider unreachable")
        self.assertEqual(len(log.events("job.failed")), 1)
        self.assertEqual(log.events("job.failed")[0]["data"]["kind"], "geocoding")

        # A failed job does not block the next start.
        async def _ok(progress: JobProgress) -> int:
            return 1

        self.assertEqual((await registry.run("geocoding", _ok))["status"], "done")

    async def test_cancel_marks_job_cancelled(self) -> None:
        registry = JobRegistry()
        started = asyncio.Event()

        async def _job(progress: JobProgress) -> None:
            started.set()
            await asyncio.sleep(3600)

        registry.start("embeddings", _job)
        await started.wait()
        self.assertTrue(registry.cancel("embeddings"))

        snap = await registry.wait("embeddings")
        self.assertEqual(snap["status"], "error")
        self.assertEqual(snap["error"], "cancelled")
        self.assertFalse(registry.cancel("embeddings"))

    async def test_cancel_before_first_step(self) -> None:
        registry = JobRegistry()

        async def _job(progress: JobProgress) -> None:
            await asyncio.sleep(3600)

        registry.start("cleanup", _job)
        registry.cancel("cleanup")

        snap = await registry.wait("cleanup")
        self.assertEqual(snap["status"], "error")
        self.assertEqual(snap["error"], "cancelled")


if __name__ == "__main__":
    unittest.main()
