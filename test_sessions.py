import threading
import unittest

from sessions import InMemorySessionStore, SessionStore


class FakeClock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestInMemorySessionStore(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = InMemorySessionStore(ttl_secs=60, clock=self.clock)

    def test_create_and_resolve(self):
        record = self.store.create(7)
        resolved = self.store.resolve(record.id)
        self.assertEqual(resolved.user_id, 7)
        self.assertEqual(resolved.id, record.id)
        self.assertEqual(len(self.store), 1)

    def test_ids_are_unique(self):
        ids = {self.store.create(1).id for _ in range(50)}
        self.assertEqual(len(ids), 50)
        for session_id in ids:
            self.assertGreaterEqual(len(session_id), 32)

    def test_unknown_and_empty_ids(self):
        self.assertIsNone(self.store.resolve("missing"))
        self.assertIsNone(self.store.resolve(None))
        self.assertIsNone(self.store.resolve(""))

    def test_destroy_is_final_and_idempotent(self):
        record = self.store.create(3)
        self.store.destroy(record.id)
        self.assertIsNone(self.store.resolve(record.id))
        self.store.destroy(record.id)
        self.store.destroy(None)
        self.store.destroy("never-existed")
        self.assertIsNone(self.store.resolve(record.id))

    def test_inactivity_expiry(self):
        record = self.store.create(3)
        self.clock.advance(59)
        self.assertIsNotNone(self.store.resolve(record.id))
        # resolving counts as activity
        self.clock.advance(59)
        self.assertIsNotNone(self.store.resolve(record.id))
        self.clock.advance(60)
        self.assertIsNone(self.store.resolve(record.id))
        self.clock.now -= 120
        self.assertIsNone(self.store.resolve(record.id))

    def test_expire_sweeps_idle_sessions(self):
        idle = self.store.create(1)
        self.clock.advance(30)
        active = self.store.create(2)
        self.clock.advance(40)
        self.assertEqual(self.store.expire(), 1)
        self.assertIsNone(self.store.resolve(idle.id))
        self.assertEqual(self.store.resolve(active.id).user_id, 2)

    def test_create_sweeps_expired(self):
        self.store.create(1)
        self.clock.advance(61)
        self.store.create(2)
        self.assertEqual(len(self.store), 1)

    def test_resolved_record_is_a_copy(self):
        record = self.store.create(4)
        resolved = self.store.resolve(record.id)
        resolved.user_id = 99
        self.assertEqual(self.store.resolve(record.id).user_id, 4)

    def test_created_record_is_a_copy(self):
        record = self.store.create(4)
        record.user_id = 99
        record.last_seen = 0
        resolved = self.store.resolve(record.id)
        self.assertEqual(resolved.user_id, 4)
        self.assertEqual(resolved.last_seen, self.clock.now)

    def test_partial_backend_cannot_be_created(self):
        class HalfStore(SessionStore):
            def create(self, user_id):
                return None

        with self.assertRaises(TypeError):
            HalfStore()

    def test_invalid_ttl(self):
        with self.assertRaises(ValueError):
            InMemorySessionStore(ttl_secs=0)

    def test_concurrent_creates(self):
        store = InMemorySessionStore(ttl_secs=60)
        created = []

        def worker(user_id):
            for _ in range(100):
                created.append(store.create(user_id).id)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(len(store), 800)
        self.assertEqual(len(set(created)), 800)


if __name__ == "__main__":
    unittest.main()
