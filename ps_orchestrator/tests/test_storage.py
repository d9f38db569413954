"""Tests for storage backends, model serialization and checkpoints."""

import os
import shutil
import tempfile
import unittest
from unittest import mock

import numpy as np

from ps_orchestrator.errors import (
    CheckpointCorruptError,
    CheckpointNotFoundError,
    ClusterError,
    ConsistencyError,
    ErrorKind,
)
from ps_orchestrator.storage.backend import LocalStorageBackend, create_backend, join_path
from ps_orchestrator.storage.checkpoint import MANIFEST_NAME, STAGING_DIR, CheckpointManager
from ps_orchestrator.storage.serialization import ModelSerializer, checksum
from ps_orchestrator.utils.config import PSConfig


class PartialRenameBackend(LocalStorageBackend):
    """Copies one snapshot of the first rename into place, then fails."""

    failed = False

    def rename(self, src, dst, overwrite=False, commit_last=None):
        if self.failed:
            return super().rename(src, dst, overwrite=overwrite, commit_last=commit_last)
        self.failed = True
        snapshot = join_path("snapshots", "A.npz")
        self.write(join_path(dst, snapshot), self.read(join_path(src, snapshot)))
        raise OSError("connection reset during copy")


class TestLocalStorageBackend(unittest.TestCase):
    """Tests for the local filesystem backend."""

    def setUp(self):
        self.base_path = tempfile.mkdtemp()
        self.backend = LocalStorageBackend(self.base_path)

    def tearDown(self):
        shutil.rmtree(self.base_path, ignore_errors=True)

    def test_write_read(self):
        self.backend.write("a/b/c.bin", b"payload")

        self.assertTrue(self.backend.exists("a/b/c.bin"))
        self.assertEqual(self.backend.read("a/b/c.bin"), b"payload")
        self.assertEqual(self.backend.list("a"), ["a/b/c.bin"])
        self.assertEqual(self.backend.list_children("a"), ["b"])

    def test_read_missing(self):
        with self.assertRaises(FileNotFoundError):
            self.backend.read("missing")
        self.assertEqual(self.backend.list("missing"), [])

    def test_path_escape(self):
        with self.assertRaises(ValueError):
            self.backend.write("../outside", b"x")

    def test_rename_directory(self):
        self.backend.write("src/x", b"1")
        self.backend.write("dst/y", b"2")

        with self.assertRaises(FileExistsError):
            self.backend.rename("src", "dst")

        self.backend.rename("src", "dst", overwrite=True)
        self.assertFalse(self.backend.exists("src"))
        self.assertEqual(self.backend.list("dst"), ["dst/x"])

    def test_interrupted_overwrite_is_restored(self):
        self.backend.write("src/x", b"new")
        self.backend.write("dst/y", b"old")
        real_replace = os.replace
        calls = []

        def crash_on_second_move(src, dst):
            calls.append(src)
            if len(calls) == 2:
                raise OSError("process died")
            real_replace(src, dst)

        with mock.patch.object(os, "replace", side_effect=crash_on_second_move):
            with self.assertRaises(OSError):
                self.backend.rename("src", "dst", overwrite=True)
        self.assertFalse(self.backend.exists("dst"))

        self.backend.restore_interrupted("dst")
        self.assertEqual(self.backend.read("dst/y"), b"old")
        self.assertEqual(self.backend.list_children(""), ["dst", "src"])

        self.backend.rename("src", "dst", overwrite=True)
        self.assertEqual(self.backend.list("dst"), ["dst/x"])

    def test_delete_prefix(self):
        self.backend.write("run/part-0", b"0")
        self.backend.write("run/part-1", b"1")
        self.backend.delete_prefix("run")
        self.assertFalse(self.backend.exists("run"))

    def test_join_path(self):
        self.assertEqual(join_path("a/", "/b", "", "c"), "a/b/c")

    def test_create_backend(self):
        backend = create_backend(PSConfig(storage_base_path=self.base_path))
        self.assertIsInstance(backend, LocalStorageBackend)


class TestS3Backend(unittest.TestCase):
    """Tests for the S3 backend against a mocked boto3 client."""

    def setUp(self):
        patcher = mock.patch("ps_orchestrator.storage.s3_backend.boto3")
        self.boto3 = patcher.start()
        self.addCleanup(patcher.stop)
        self.client = self.boto3.client.return_value

        from ps_orchestrator.storage.s3_backend import S3Backend
        self.backend = S3Backend(PSConfig(storage_backend="s3", storage_base_path="s3://bucket/jobs"))
        self.addCleanup(self.backend.close)

    def test_requires_s3_uri(self):
        from ps_orchestrator.storage.s3_backend import S3Backend
        with self.assertRaises(ValueError):
            S3Backend(PSConfig(storage_backend="s3", storage_base_path="/tmp/x"))

    def test_write_uses_prefix(self):
        self.backend.write("models/m/meta.json", b"{}")

        self.client.put_object.assert_called_once()
        kwargs = self.client.put_object.call_args.kwargs
        self.assertEqual(kwargs["Bucket"], "bucket")
        self.assertEqual(kwargs["Key"], "jobs/models/m/meta.json")


class TestModelSerializer(unittest.TestCase):
    """Tests for matrix serialization."""

    def setUp(self):
        self.serializer = ModelSerializer()
        self.values = np.arange(12, dtype=np.float32).reshape(4, 3)

    def test_npz(self):
        data = self.serializer.serialize_matrix(self.values, format="npz")
        restored = self.serializer.deserialize_matrix(data, format="npz")
        np.testing.assert_array_equal(restored, self.values)
        self.assertEqual(restored.dtype, np.float32)

    def test_parquet_keeps_shape_and_dtype(self):
        data = self.serializer.serialize_matrix(self.values, format="parquet")
        restored = self.serializer.deserialize_matrix(data, format="parquet")
        np.testing.assert_array_equal(restored, self.values)
        self.assertEqual(restored.shape, (4, 3))
        self.assertEqual(restored.dtype, np.float32)

    def test_invalid_data(self):
        with self.assertRaises(ValueError):
            self.serializer.deserialize_matrix(b"not a matrix", format="npz")
        with self.assertRaises(ValueError):
            self.serializer.deserialize_matrix(b"not a matrix", format="parquet")
        with self.assertRaises(ValueError):
            self.serializer.serialize_matrix(self.values, format="csv")

    def test_checksum(self):
        self.assertEqual(checksum(b"abc"), checksum(b"abc"))
        self.assertNotEqual(checksum(b"abc"), checksum(b"abd"))


class TestCheckpointManager(unittest.TestCase):
    """Tests for checkpoint publication and recovery."""

    def setUp(self):
        self.base_path = tempfile.mkdtemp()
        self.backend = LocalStorageBackend(self.base_path)
        self.manager = CheckpointManager(self.backend, base_path="ckpt")
        self.snapshots = {
            "A": np.random.randn(10, 4).astype(np.float32),
            "B": np.ones((5, 2), dtype=np.float64),
        }

    def tearDown(self):
        shutil.rmtree(self.base_path, ignore_errors=True)

    def test_save_and_load(self):
        record = self.manager.save(1, self.snapshots, metadata={"step": 10})
        self.assertTrue(record.complete)
        self.assertEqual(record.matrix_names, ["A", "B"])

        loaded, values = self.manager.load(1)
        self.assertEqual(loaded.metadata, {"step": 10})
        for name, expected in self.snapshots.items():
            np.testing.assert_array_equal(values[name], expected)
            self.assertEqual(values[name].dtype, expected.dtype)

        _, subset = self.manager.load(1, names=["B"])
        self.assertEqual(list(subset), ["B"])

    def test_ids_must_increase(self):
        self.manager.save(2, self.snapshots)

        with self.assertRaises(ConsistencyError):
            self.manager.save(2, self.snapshots)
        with self.assertRaises(ConsistencyError):
            self.manager.save(1, self.snapshots)

        self.manager.save(3, self.snapshots)
        self.assertEqual([r.checkpoint_id for r in self.manager.list_checkpoints()], [2, 3])
        self.assertEqual(self.manager.latest().checkpoint_id, 3)

    def test_not_found(self):
        with self.assertRaises(CheckpointNotFoundError):
            self.manager.load(7)
        self.assertIsNone(self.manager.latest())

    def test_corrupt_snapshot(self):
        self.manager.save(1, self.snapshots)
        self.backend.write("ckpt/checkpoint-1/snapshots/A.npz", b"garbage")

        with self.assertRaises(CheckpointCorruptError):
            self.manager.load(1)

    def test_missing_manifest(self):
        self.manager.save(1, self.snapshots)
        self.backend.delete(f"ckpt/checkpoint-1/{MANIFEST_NAME}")

        with self.assertRaises(CheckpointCorruptError):
            self.manager.load(1)
        self.assertEqual(self.manager.list_checkpoints(), [])

    def test_incomplete_manifest(self):
        self.manager.save(1, self.snapshots)
        path = f"ckpt/checkpoint-1/{MANIFEST_NAME}"
        manifest = self.manager.serializer.deserialize_metadata(self.backend.read(path))
        manifest["complete"] = False
        self.backend.write(path, self.manager.serializer.serialize_metadata(manifest))

        with self.assertRaises(CheckpointCorruptError):
            self.manager.read_record(1)

    def test_crash_during_write_publishes_nothing(self):
        real_write = self.backend.write
        calls = []

        def failing_write(path, data):
            calls.append(path)
            if len(calls) == 2:
                raise OSError("disk full")
            real_write(path, data)

        with mock.patch.object(self.backend, "write", side_effect=failing_write):
            with self.assertRaises(ClusterError) as ctx:
                self.manager.save(1, self.snapshots)

        self.assertEqual(ctx.exception.kind, ErrorKind.CONNECTIVITY)
        self.assertFalse(self.backend.exists("ckpt/checkpoint-1"))
        self.assertEqual(self.backend.list(join_path("ckpt", STAGING_DIR)), [])

        # The id was never published, so it can be reused
        self.manager.save(1, self.snapshots)
        self.assertEqual(self.manager.latest().checkpoint_id, 1)

    def test_failed_rename_leaves_nothing_visible(self):
        backend = PartialRenameBackend(self.base_path)
        manager = CheckpointManager(backend, base_path="ckpt")

        with self.assertRaises(ClusterError) as ctx:
            manager.save(1, self.snapshots)

        self.assertEqual(ctx.exception.kind, ErrorKind.CONNECTIVITY)
        self.assertFalse(backend.exists("ckpt/checkpoint-1"))
        with self.assertRaises(CheckpointNotFoundError):
            manager.load(1)

        manager.save(1, self.snapshots)
        _, values = manager.load(1)
        np.testing.assert_array_equal(values["A"], self.snapshots["A"])

    def test_incomplete_directory_does_not_block_id(self):
        self.manager.save(1, self.snapshots)
        self.backend.write("ckpt/checkpoint-2/snapshots/A.npz", b"partial")

        self.manager.save(2, self.snapshots)
        self.assertEqual(self.manager.latest().checkpoint_id, 2)
        self.manager.load(2)

        with self.assertRaises(ConsistencyError):
            self.manager.check_next_id(2)

    def test_cleanup_staging(self):
        self.backend.write(join_path("ckpt", STAGING_DIR, "checkpoint-4-dead", "snapshots", "A.npz"), b"x")
        self.manager.cleanup_staging()
        self.assertFalse(self.backend.exists(join_path("ckpt", STAGING_DIR)))

    def test_retention(self):
        manager = CheckpointManager(self.backend, base_path="kept", max_to_keep=2)
        for checkpoint_id in (1, 2, 3):
            manager.save(checkpoint_id, self.snapshots)

        self.assertEqual([r.checkpoint_id for r in manager.list_checkpoints()], [2, 3])


if __name__ == "__main__":
    unittest.main()
