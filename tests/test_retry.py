import unittest

from lib.errors import StorageFatalError, StorageTransientError
from lib.retry import backoff_delay, is_transient_storage_error, with_storage_retry


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _operation(failures):
    """Raise each of ``failures`` in turn, then return "ok"."""
    state = {"calls": 0}

    async def op():
        state["calls"] += 1
        if failures:
            raise failures.pop(0)
        return "ok"

    return op, state


class ClassifyTests(unittest.TestCase):
    def test_transient_markers(self):
        self.assertTrue(is_transient_storage_error(Exception("P1001: Can't reach database server")))
        self.assertTrue(is_transient_storage_error(Exception("read ECONNRESET")))
        self.assertTrue(is_transient_storage_error(ConnectionRefusedError()))
        self.assertTrue(is_transient_storage_error(TimeoutError()))

    def test_non_transient(self):
        self.assertFalse(is_transient_storage_error(ValueError("unique constraint failed")))
        self.assertFalse(is_transient_storage_error(StorageFatalError("nope")))

    def test_backoff(self):
        self.assertEqual([backoff_delay(i, 0.5) for i in range(3)], [0.5, 1.0, 2.0])


class WithStorageRetryTests(unittest.IsolatedAsyncioTestCase):
    async def test_success_after_transient_failure(self):
        sleep = RecordingSleep()
        op, state = _operation([ConnectionResetError("connection reset by peer")])
        self.assertEqual(await with_storage_retry(op, sleep=sleep), "ok")
        self.assertEqual(state["calls"], 2)
        self.assertEqual(sleep.delays, [0.5])

    async def test_exhaustion_waits_half_one_two_seconds(self):
        sleep = RecordingSleep()
        op, state = _operation([Exception("ECONNREFUSED")] * 4)
        with self.assertRaises(StorageTransientError) as ctx:
            await with_storage_retry(op, retries=3, base=0.5, sleep=sleep, label="create")
        self.assertEqual(state["calls"], 4)
        self.assertEqual(sleep.delays, [0.5, 1.0, 2.0])
        self.assertEqual(ctx.exception.meta["attempts"], 4)
        self.assertEqual(ctx.exception.meta["operation"], "create")

    async def test_non_transient_is_not_retried(self):
        sleep = RecordingSleep()
        op, state = _operation([ValueError("unique constraint failed")])
        with self.assertRaises(StorageFatalError) as ctx:
            await with_storage_retry(op, sleep=sleep)
        self.assertEqual(state["calls"], 1)
        self.assertEqual(sleep.delays, [])
        self.assertIsInstance(ctx.exception.__cause__, ValueError)

    async def test_fatal_error_passes_through(self):
        original = StorageFatalError("already classified")
        op, _ = _operation([original])
        with self.assertRaises(StorageFatalError) as ctx:
            await with_storage_retry(op, sleep=RecordingSleep())
        self.assertIs(ctx.exception, original)


if __name__ == "__main__":
    unittest.main()
