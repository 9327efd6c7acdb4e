#!/usr/bin/env python3
"""
Tests for the response cache and its sweeper
"""
import threading
import unittest

from proxy_cache import ResponseCache, CacheSweeper, is_cacheable_size, MAX_ENTRY_SIZE


class FakeClock:

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestResponseCache(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.cache = ResponseCache(ttl=300, max_entries=None, clock=self.clock)

    def test_get_returns_stored_entry(self):
        self.cache.put('https://a.com/', b'<html>', 'text/html')
        entry = self.cache.get('https://a.com/')
        self.assertEqual(entry.body, b'<html>')
        self.assertEqual(entry.content_type, 'text/html')
        self.assertEqual(entry.stored_at, 1000.0)

    def test_miss_for_unknown_key(self):
        self.assertIsNone(self.cache.get('https://nope.com/'))
        self.assertEqual(self.cache.stats()['misses'], 1)

    def test_keys_are_not_normalized(self):
        """Test two spellings of one resource are separate entries"""
        self.cache.put('https://a.com', b'one', 'text/plain')
        self.assertIsNone(self.cache.get('https://a.com/'))
        self.assertIsNone(self.cache.get('HTTPS://a.com'))

    def test_expired_entry_is_absent(self):
        """Test lazy expiry without any sweep"""
        self.cache.put('k', b'v', 'text/plain')
        self.clock.advance(299)
        self.assertIsNotNone(self.cache.get('k'))
        self.clock.advance(1)
        self.assertIsNone(self.cache.get('k'))
        self.assertNotIn('k', self.cache)

    def test_put_overwrites_and_restamps(self):
        self.cache.put('k', b'old', 'text/plain')
        self.clock.advance(200)
        self.cache.put('k', b'new', 'application/json')
        self.clock.advance(200)
        entry = self.cache.get('k')
        self.assertEqual(entry.body, b'new')
        self.assertEqual(entry.content_type, 'application/json')

    def test_sweep_removes_only_expired(self):
        self.cache.put('old', b'1', 'text/plain')
        self.clock.advance(250)
        self.cache.put('fresh', b'2', 'text/plain')
        self.clock.advance(100)
        self.assertEqual(self.cache.sweep_expired(), 1)
        self.assertNotIn('old', self.cache)
        self.assertIn('fresh', self.cache)
        self.assertEqual(len(self.cache), 1)

    def test_lru_bound(self):
        cache = ResponseCache(ttl=300, max_entries=2, clock=self.clock)
        cache.put('a', b'1', 'text/plain')
        cache.put('b', b'2', 'text/plain')
        cache.get('a')
        cache.put('c', b'3', 'text/plain')
        self.assertIn('a', cache)
        self.assertNotIn('b', cache)
        self.assertIn('c', cache)
        self.assertEqual(cache.stats()['evictions'], 1)

    def test_concurrent_puts(self):
        def writer(n):
            for i in range(200):
                self.cache.put(f'{n}-{i}', b'x', 'text/plain')
                self.cache.get(f'{n}-{i}')

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(len(self.cache), 1000)


class TestSizeGate(unittest.TestCase):

    def test_limit_is_one_mebibyte(self):
        self.assertTrue(is_cacheable_size(b'x' * (MAX_ENTRY_SIZE - 1)))
        self.assertFalse(is_cacheable_size(b'x' * MAX_ENTRY_SIZE))


class TestCacheSweeper(unittest.TestCase):

    def test_sweeper_runs_periodically(self):
        swept = threading.Event()

        class RecordingCache:
            def sweep_expired(self):
                swept.set()
                return 0

        sweeper = CacheSweeper(RecordingCache(), interval=0.01)
        sweeper.start()
        try:
            self.assertTrue(swept.wait(2))
        finally:
            sweeper.stop()
            sweeper.join(2)
        self.assertFalse(sweeper.is_alive())

    def test_sweep_errors_do_not_stop_thread(self):
        calls = []
        done = threading.Event()

        class FlakyCache:
            def sweep_expired(self):
                calls.append(1)
                if len(calls) == 1:
                    raise RuntimeError('boom')
                done.set()
                return 0

        sweeper = CacheSweeper(FlakyCache(), interval=0.01)
        with self.assertLogs('proxy_cache', level='WARNING'):
            sweeper.start()
            try:
                self.assertTrue(done.wait(2))
            finally:
                sweeper.stop()
                sweeper.join(2)
        self.assertGreaterEqual(len(calls), 2)


if __name__ == '__main__':
    unittest.main()
