"""Tests for the scratch space."""

import os
import tempfile
import threading
import unittest

from scratch import FileScratch


class TestFileScratch(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.scratch = FileScratch(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def test_missing_key(self):
        self.assertFalse(self.scratch.exists("nope"))
        self.assertEqual(self.scratch.keys(), [])
        # Deleting a missing key is a no-op
        self.scratch.delete("nope")

    def test_fetch_populates_once(self):
        calls = []

        def populate(dest):
            calls.append(1)
            dest.write(b"payload")

        self.assertEqual(self.scratch.fetch("k", populate), b"payload")
        self.assertEqual(self.scratch.fetch("k", populate), b"payload")
        self.assertEqual(len(calls), 1)
        self.assertTrue(self.scratch.exists("k"))
        self.assertEqual(self.scratch.read("k"), b"payload")

    def test_failed_populate_leaves_nothing(self):
        def populate(dest):
            dest.write(b"partial")
            raise OSError("disk on fire")

        with self.assertRaises(OSError):
            self.scratch.fetch("k", populate)
        self.assertFalse(self.scratch.exists("k"))
        self.assertEqual(os.listdir(self._tmp.name), [])

        # A later fetch populates from scratch
        self.assertEqual(self.scratch.fetch("k", lambda dest: dest.write(b"full")), b"full")

    def test_write_replaces(self):
        self.scratch.write("k", lambda dest: dest.write(b"one"))
        self.scratch.write("k", lambda dest: dest.write(b"two"))
        self.assertEqual(self.scratch.read("k"), b"two")

    def test_keys_with_slashes_stay_inside_root(self):
        key = "extracted_../docs/a.txt"
        self.scratch.write(key, lambda dest: dest.write(b"x"))
        path = self.scratch.path(key)
        self.assertEqual(os.path.dirname(path), self._tmp.name)
        self.assertEqual(self.scratch.keys(), [key])

    def test_delete(self):
        self.scratch.write("k", lambda dest: dest.write(b"x"))
        self.scratch.delete("k")
        self.assertFalse(self.scratch.exists("k"))

    def test_long_key(self):
        key = "extracted_" + "a" * 250
        self.assertFalse(self.scratch.exists(key))
        self.assertEqual(self.scratch.fetch(key, lambda dest: dest.write(b"long")), b"long")
        self.assertTrue(self.scratch.exists(key))
        self.assertLess(len(os.path.basename(self.scratch.path(key))), 255)
        self.assertEqual(self.scratch.keys(), [key])

        self.scratch.delete(key)
        self.assertFalse(self.scratch.exists(key))
        self.assertEqual(self.scratch.keys(), [])

    def test_non_ascii_key(self):
        key = "extracted_資料/" + "報告書" * 10 + ".txt"
        self.scratch.write(key, lambda dest: dest.write(b"cjk"))
        self.scratch.write("original", lambda dest: dest.write(b"zip"))
        self.assertEqual(self.scratch.read(key), b"cjk")
        self.assertEqual(self.scratch.keys(), sorted(["original", key]))
        self.assertTrue(self.scratch.path(key).startswith(self._tmp.name))

    def test_lock_map_does_not_grow(self):
        for i in range(50):
            self.scratch.fetch(f"k{i}", lambda dest: dest.write(b"x"))
        self.assertEqual(len(self.scratch._locks), 0)

    def test_concurrent_fetch_populates_once(self):
        calls = []
        started = threading.Event()

        def populate(dest):
            calls.append(1)
            started.wait(1)
            dest.write(b"shared")

        results = []
        threads = [
            threading.Thread(target=lambda: results.append(self.scratch.fetch("k", populate)))
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        started.set()
        for t in threads:
            t.join()
        self.assertEqual(len(calls), 1)
        self.assertEqual(results, [b"shared"] * 4)


if __name__ == "__main__":
    unittest.main()
