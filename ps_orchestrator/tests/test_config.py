"""Tests for configuration, error kinds and matrix/model contexts."""

import unittest

from ps_orchestrator.contexts import MatrixContext, ModelContext, PartitionAssignment
from ps_orchestrator.errors import (
    ClusterError,
    ConfigurationError,
    ConnectivityError,
    ErrorKind,
    TaskFailureError,
    wrap_error,
)
from ps_orchestrator.utils.config import PSConfig


class TestPSConfig(unittest.TestCase):
    """Tests for PS configuration."""

    def test_default_config(self):
        """Test default configuration values."""
        config = PSConfig()

        self.assertEqual(config.num_servers, 3)
        self.assertEqual(config.ps_quorum, "all")
        self.assertEqual(config.action_type, "train")
        self.assertEqual(config.tasks_per_run, config.num_workers)
        config.validate()

    def test_serialization(self):
        """Test config serialization."""
        config = PSConfig(num_servers=2, num_workers=8, task_params={"lr": 0.1})

        d = config.to_dict()
        self.assertEqual(d["num_servers"], 2)

        config2 = PSConfig.from_dict(dict(d, unknown_key=1))
        self.assertEqual(config2.num_workers, 8)

        config3 = PSConfig.from_json(config.to_json())
        self.assertEqual(config3.task_params, {"lr": 0.1})

    def test_quorum_size(self):
        self.assertEqual(PSConfig(num_servers=5).quorum_size(), 5)
        self.assertEqual(PSConfig(num_servers=5, ps_quorum="majority").quorum_size(), 3)
        self.assertEqual(PSConfig(num_servers=5, ps_quorum=2).quorum_size(), 2)

    def test_validation(self):
        """Test configuration validation."""
        invalid = [
            dict(num_servers=0),
            dict(num_workers=0),
            dict(ps_quorum=7),
            dict(ps_quorum="most"),
            dict(action_type="evaluate"),
            dict(action_type="predict"),
            dict(task_failure_tolerance=1.0),
            dict(partition_scheme="random"),
            dict(storage_backend="hdfs"),
            dict(backoff_initial_seconds=3.0, backoff_max_seconds=1.0),
            dict(shutdown_grace_seconds=-1.0),
        ]
        for kwargs in invalid:
            with self.subTest(kwargs=kwargs):
                with self.assertRaises(ValueError):
                    PSConfig(**kwargs).validate()

        PSConfig(action_type="predict", output_path="out").validate()


class TestErrors(unittest.TestCase):
    """Tests for the unified error type."""

    def test_subclasses_pin_kind(self):
        self.assertEqual(ConfigurationError("x").kind, ErrorKind.CONFIGURATION)
        self.assertEqual(ConnectivityError("x").kind, ErrorKind.CONNECTIVITY)
        self.assertIsInstance(ConnectivityError("x"), ClusterError)

    def test_kind_required(self):
        with self.assertRaises(TypeError):
            ClusterError("no kind")

    def test_retryable(self):
        self.assertTrue(ConnectivityError("x").retryable)
        self.assertTrue(ClusterError("x", kind=ErrorKind.TIMEOUT).retryable)
        self.assertFalse(ConfigurationError("x").retryable)
        self.assertFalse(ClusterError("x", kind=ErrorKind.KILLED).retryable)

    def test_cause_is_chained(self):
        cause = OSError("connection refused")
        err = ConnectivityError("shard unreachable", cause=cause)

        self.assertIs(err.__cause__, cause)
        self.assertIn("connectivity", str(err))
        self.assertIn("connection refused", str(err))

    def test_task_failure_lists_ids(self):
        err = TaskFailureError("2 tasks failed", task_ids=["t-2", "t-0"])
        self.assertEqual(err.task_ids, ["t-0", "t-2"])
        self.assertEqual(err.kind, ErrorKind.TASK_FAILURE)

    def test_wrap_error(self):
        original = ConfigurationError("bad")
        self.assertIs(wrap_error(original, ErrorKind.CONNECTIVITY), original)

        wrapped = wrap_error(IOError("disk"), ErrorKind.CONNECTIVITY)
        self.assertEqual(wrapped.kind, ErrorKind.CONNECTIVITY)
        self.assertIsInstance(wrapped.cause, IOError)


class TestContexts(unittest.TestCase):
    """Tests for matrix and model contexts."""

    def test_valid_matrix(self):
        ctx = MatrixContext("A", rows=100, cols=10)
        ctx.validate()

        self.assertFalse(ctx.committed)
        self.assertEqual(ctx.shape, (100, 10))

        committed = ctx.with_id(3)
        self.assertTrue(committed.committed)
        self.assertEqual(committed.matrix_id, 3)
        self.assertIsNone(ctx.matrix_id)

    def test_invalid_matrix(self):
        invalid = [
            MatrixContext("", 10, 10),
            MatrixContext("a/b", 10, 10),
            MatrixContext("A", 0, 10),
            MatrixContext("A", 10, -1),
            MatrixContext("A", 10, 10, partition=0),
            MatrixContext("A", 10, 10, storage="columnar"),
            MatrixContext("A", 10, 10, init_strategy="uniform"),
            MatrixContext("A", 10, 10, dtype="not_a_dtype"),
        ]
        for ctx in invalid:
            with self.subTest(ctx=ctx):
                with self.assertRaises(ConfigurationError):
                    ctx.validate()

    def test_partitions_for_rows(self):
        assignment = PartitionAssignment(
            matrix_id=0,
            name="A",
            rows=10,
            cols=2,
            dtype="float32",
            blocks=[(0, 4), (4, 8), (8, 10)],
            shards={0: 0, 1: 1, 2: 0},
        )

        self.assertEqual(assignment.partitions_for_rows([0, 3]), [0])
        self.assertEqual(assignment.partitions_for_rows([3, 4, 9]), [0, 1, 2])
        self.assertEqual(assignment.partitions_on(0), [0, 2])
        self.assertEqual(assignment.shard_ids(), [0, 1])

        restored = PartitionAssignment.from_dict(assignment.to_dict())
        self.assertEqual(restored.blocks, assignment.blocks)
        self.assertEqual(restored.shards, assignment.shards)

    def test_model_context_defaults(self):
        ctx = ModelContext(path="models/m")
        self.assertEqual(ctx.matrix_names, ())
        self.assertIsNone(ctx.checkpoint_id)
        self.assertEqual(ctx.format, "npz")


if __name__ == "__main__":
    unittest.main()
