"""Tests for the control client components."""

import os
import shutil
import tempfile
import threading
import time
import unittest
from unittest import mock

import numpy as np

from ps_orchestrator.client.barrier import CompletionBarrier
from ps_orchestrator.client.bootstrap import ClusterBootstrapper
from ps_orchestrator.client.matrix_registry import MatrixRegistry
from ps_orchestrator.client.model_manager import LegacyModelAdapter, ModelLifecycleManager, ModelState
from ps_orchestrator.client.task_dispatcher import TaskDispatcher, TaskRegistry
from ps_orchestrator.communication.protocol import MessageType
from ps_orchestrator.communication.rpc_handler import RPCClient, RetryPolicy
from ps_orchestrator.contexts import MatrixContext, ModelContext
from ps_orchestrator.errors import (
    CheckpointNotFoundError,
    ClusterError,
    ConfigurationError,
    ConnectivityError,
    ConsistencyError,
    ErrorKind,
    TaskFailureError,
)
from ps_orchestrator.storage.backend import LocalStorageBackend
from ps_orchestrator.utils.config import PSConfig
from ps_orchestrator.worker.task import BaseTask, TaskContext, TaskStatus, InputSplit
from ps_orchestrator.worker.worker_pool import WorkerPool


def make_rpc(config):
    return RPCClient(timeout=5, retry_policy=RetryPolicy.from_config(config))


class ClusterTestCase(unittest.TestCase):
    """Starts a local PS tier and a registry bound to it for each test."""

    num_servers = 2

    def make_config(self, **overrides):
        settings = dict(
            num_servers=self.num_servers,
            num_workers=4,
            connect_retries=2,
            backoff_initial_seconds=0.01,
            storage_base_path=self.base_path,
        )
        settings.update(overrides)
        return PSConfig(**settings)

    def setUp(self):
        self.base_path = tempfile.mkdtemp()
        self.config = self.make_config()
        self.rpc = make_rpc(self.config)
        self.bootstrapper = ClusterBootstrapper(self.config, self.rpc)
        self.shards = self.bootstrapper.start_ps_server()
        self.registry = MatrixRegistry(self.config, self.rpc)
        self.registry.bind(self.shards)
        self.storage = LocalStorageBackend(self.base_path)

    def tearDown(self):
        self.registry.clear()
        self.bootstrapper.shutdown(grace_period_seconds=1)
        self.rpc.close()
        shutil.rmtree(self.base_path, ignore_errors=True)

    def shard_stores(self):
        return [server.store for server in self.bootstrapper._master.servers]


class TestClusterBootstrapper(ClusterTestCase):
    """Tests for PS tier startup."""

    def test_start_is_idempotent(self):
        again = self.bootstrapper.start_ps_server()
        self.assertEqual([s.port for s in again], [s.port for s in self.shards])
        self.assertTrue(all(s.status == "ready" for s in again))

    def test_cluster_stats(self):
        stats = self.bootstrapper.get_cluster_stats()
        self.assertEqual(stats["num_servers"], 2)
        self.assertEqual([s["server_id"] for s in stats["servers"]], [0, 1])


class TestBootstrapFailures(unittest.TestCase):
    """Tests for quorum timeouts and kill interruption."""

    def setUp(self):
        self.rpc = None
        self.bootstrapper = None

    def tearDown(self):
        if self.bootstrapper is not None:
            self.bootstrapper.kill()
        if self.rpc is not None:
            self.rpc.close()

    def start_unready(self, **overrides):
        config = PSConfig(num_servers=2, backoff_initial_seconds=0.01, backoff_max_seconds=0.05, **overrides)
        self.rpc = make_rpc(config)
        real_request = self.rpc.request

        def shards_never_ready(host, port, msg_type, payload=None, retry_policy=None, cancel_event=None):
            if msg_type == MessageType.PING:
                raise ConnectivityError("shard not ready")
            return real_request(host, port, msg_type, payload, retry_policy, cancel_event)

        patcher = mock.patch.object(self.rpc, "request", side_effect=shards_never_ready)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.bootstrapper = ClusterBootstrapper(config, self.rpc, threading.Event())
        return self.bootstrapper

    def test_quorum_timeout(self):
        bootstrapper = self.start_unready(startup_timeout_seconds=0.3)

        with self.assertRaises(ConnectivityError):
            bootstrapper.start_ps_server()
        self.assertEqual(bootstrapper.shards, [])

    def test_kill_interrupts_startup(self):
        bootstrapper = self.start_unready(startup_timeout_seconds=30)
        errors = []

        def start():
            try:
                bootstrapper.start_ps_server()
            except ClusterError as e:
                errors.append(e)

        thread = threading.Thread(target=start)
        start_time = time.time()
        thread.start()
        time.sleep(0.3)
        bootstrapper.kill(ack_timeout=1.0)
        thread.join(timeout=5)

        self.assertFalse(thread.is_alive())
        self.assertLess(time.time() - start_time, 5)
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].kind, ErrorKind.KILLED)


class TestMatrixRegistry(ClusterTestCase):
    """Tests for atomic matrix commits."""

    def test_commit_assigns_ids_and_places_blocks(self):
        self.registry.add_matrix(MatrixContext("A", rows=100, cols=10))
        self.registry.add_matrix(MatrixContext("B", rows=7, cols=5, partition=2))
        committed = self.registry.create_matrices()

        self.assertEqual([(c.name, c.matrix_id) for c in committed], [("A", 0), ("B", 1)])
        self.assertEqual(self.registry.staged(), [])

        a = self.registry.assignment("A")
        self.assertEqual(a.blocks, [(0, 50), (50, 100)])
        b = self.registry.assignment("B")
        self.assertEqual(b.blocks, [(0, 2), (2, 4), (4, 6), (6, 7)])

        values = self.registry.matrix_client().pull("B")
        self.assertEqual(values.shape, (7, 5))

    def test_empty_commit_is_noop(self):
        self.assertEqual(self.registry.create_matrices(), [])

    def test_duplicate_names(self):
        self.registry.add_matrix(MatrixContext("A", rows=4, cols=2))
        with self.assertRaises(ConfigurationError):
            self.registry.add_matrix(MatrixContext("A", rows=8, cols=2))

        with self.assertRaises(ConfigurationError):
            self.registry.create_matrices([MatrixContext("X", 2, 2), MatrixContext("X", 2, 2)])
        self.assertEqual(self.registry.committed(), [])

    def test_invalid_batch_commits_nothing(self):
        batch = [MatrixContext("ok", rows=4, cols=2), MatrixContext("bad", rows=0, cols=2)]
        with self.assertRaises(ConfigurationError):
            self.registry.create_matrices(batch)

        self.assertEqual(self.registry.committed(), [])
        self.assertTrue(all(len(store) == 0 for store in self.shard_stores()))

    def test_shard_failure_rolls_back(self):
        real_request = self.rpc.request
        failing_port = self.shards[1].port

        def second_shard_down(host, port, msg_type, payload=None, retry_policy=None, cancel_event=None):
            if msg_type == MessageType.CREATE_MATRICES and port == failing_port:
                raise ConnectivityError("shard 1 unreachable")
            return real_request(host, port, msg_type, payload, retry_policy, cancel_event)

        self.registry.add_matrix(MatrixContext("A", rows=10, cols=2))
        with mock.patch.object(self.rpc, "request", side_effect=second_shard_down):
            with self.assertRaises(ConnectivityError):
                self.registry.create_matrices()

        self.assertEqual(self.registry.committed(), [])
        self.assertEqual([c.name for c in self.registry.staged()], ["A"])
        self.assertTrue(all(len(store) == 0 for store in self.shard_stores()))

        # Retrying the same batch succeeds once the shard is back
        self.registry.create_matrices()
        self.assertEqual(self.registry.get("A").matrix_id, 0)

    def test_requires_bound_shards(self):
        registry = MatrixRegistry(self.config, self.rpc)
        with self.assertRaises(ConfigurationError):
            registry.create_matrices([MatrixContext("A", 4, 2)])


class CountingTask(BaseTask):
    """Adds one to the row of matrix "A" matching the split index."""

    def run(self, context: TaskContext):
        rows = [context.split.index]
        context.matrices.increment_rows("A", rows, np.ones((1, 2)))
        return len(context.records)


class FlakyTask(BaseTask):
    """Fails on odd splits; split 0 is slow."""

    def run(self, context: TaskContext):
        if context.split.index == 0:
            time.sleep(0.5)
        if context.split.index % 2:
            raise RuntimeError(f"bad split {context.split.index}")


class WritingTask(BaseTask):
    def run(self, context: TaskContext):
        context.write_output(f"prediction {context.split.index}\n".encode())


class BlockingTask(BaseTask):
    def run(self, context: TaskContext):
        while not context.cancel_event.wait(0.01):
            pass
        context.check_cancelled()


class TestTaskDispatcher(ClusterTestCase):
    """Tests for dispatch and the completion barrier."""

    def setUp(self):
        super().setUp()
        self.registry.create_matrices([MatrixContext("A", rows=4, cols=2, init_strategy="zeros")])
        self.task_registry = TaskRegistry({
            "count": CountingTask,
            "flaky": FlakyTask,
            "write": WritingTask,
            "block": BlockingTask,
        })
        self.pools = []

    def tearDown(self):
        for pool in self.pools:
            pool.kill(ack_timeout=1.0)
        super().tearDown()

    def make_dispatcher(self, **overrides):
        config = self.make_config(**overrides)
        pool = WorkerPool(config.num_workers)
        self.pools.append(pool)
        return TaskDispatcher(config, self.registry, self.task_registry, pool, self.storage)

    def test_run_to_completion(self):
        dispatcher = self.make_dispatcher()
        task_ids = dispatcher.run_task("count")

        self.assertEqual(len(task_ids), 4)
        summary = dispatcher.wait_for_completion(timeout=10)

        self.assertEqual(summary["succeeded"], 4)
        self.assertEqual(summary["failed"], [])
        np.testing.assert_array_equal(self.registry.matrix_client().pull("A"), np.ones((4, 2)))

    def test_unknown_task_type(self):
        with self.assertRaises(ConfigurationError):
            self.make_dispatcher().run_task("missing")

    def test_requires_committed_matrices(self):
        self.registry.clear()
        with self.assertRaises(ConfigurationError):
            self.make_dispatcher().run_task("count")

    def test_failures_reported_after_all_terminal(self):
        dispatcher = self.make_dispatcher()
        task_ids = dispatcher.run_task("flaky")

        with self.assertRaises(TaskFailureError) as ctx:
            dispatcher.wait_for_completion(timeout=10)

        self.assertEqual(ctx.exception.task_ids, [task_ids[1], task_ids[3]])
        statuses = {t.task_id: t.status for t in dispatcher.tasks}
        self.assertTrue(all(s.is_terminal for s in statuses.values()))
        self.assertEqual(statuses[task_ids[0]], TaskStatus.SUCCEEDED)

    def test_failure_tolerance(self):
        dispatcher = self.make_dispatcher(task_failure_tolerance=0.5)
        dispatcher.run_task("flaky")

        summary = dispatcher.wait_for_completion(timeout=10)
        self.assertEqual(summary["succeeded"], 2)
        self.assertEqual(len(summary["failed"]), 2)

    def test_timeout_then_cancel(self):
        dispatcher = self.make_dispatcher(num_workers=2)
        dispatcher.run_task("block")

        with self.assertRaises(ClusterError) as ctx:
            dispatcher.wait_for_completion(timeout=0.2)
        self.assertEqual(ctx.exception.kind, ErrorKind.TIMEOUT)

        with self.assertRaises(ConfigurationError):
            dispatcher.run_task("count")

        dispatcher.cancel_all()
        with self.assertRaises(TaskFailureError):
            dispatcher.wait_for_completion(timeout=5)
        self.assertEqual(dispatcher.counts()["killed"], 2)

    def test_input_splits(self):
        for i in range(5):
            self.storage.write(f"input/part-{i}", f"a\nb\n{i}\n".encode())
        dispatcher = self.make_dispatcher(input_path="input", num_tasks=2)

        splits = dispatcher.input_splits()
        self.assertEqual([len(s.paths) for s in splits], [3, 2])

        dispatcher.run_task("count")
        summary = dispatcher.wait_for_completion(timeout=10)
        self.assertEqual(sorted(t["records"] for t in summary["tasks"]), [6, 9])

    def test_missing_input(self):
        dispatcher = self.make_dispatcher(input_path="nothing-here")
        with self.assertRaises(ConfigurationError):
            dispatcher.run_task("count")

    def test_predict_output_is_renamed(self):
        dispatcher = self.make_dispatcher(action_type="predict", output_path="predictions", num_tasks=2)
        dispatcher.run_task("write")
        summary = dispatcher.wait_for_completion(timeout=10)

        self.assertEqual(summary["output_path"], "predictions")
        self.assertEqual(
            self.storage.list("predictions"),
            ["predictions/part-00000", "predictions/part-00001"],
        )

        dispatcher.cleanup()
        self.assertEqual(self.storage.list(self.config.temp_path), [])


class TestCompletionBarrier(unittest.TestCase):

    def test_duplicate_registration(self):
        barrier = CompletionBarrier()
        barrier.register(["t1"])
        with self.assertRaises(ValueError):
            barrier.register(["t1"])

    def test_kill_interrupts_wait(self):
        barrier = CompletionBarrier()
        barrier.register(["t1"])
        kill = threading.Event()
        threading.Timer(0.2, kill.set).start()

        with self.assertRaises(ClusterError) as ctx:
            barrier.wait(kill_event=kill)
        self.assertEqual(ctx.exception.kind, ErrorKind.KILLED)

    def test_wait_returns_statuses(self):
        barrier = CompletionBarrier()
        barrier.register(["t1", "t2"])
        for task_id, status in (("t1", TaskStatus.SUCCEEDED), ("t2", TaskStatus.FAILED)):
            context = TaskContext(task_id=task_id, task_type="x", split=InputSplit(0), status=status)
            barrier.notify(context)

        self.assertEqual(barrier.wait(timeout=1), {"t1": TaskStatus.SUCCEEDED, "t2": TaskStatus.FAILED})
        self.assertEqual(list(barrier.failed()), ["t2"])


class TestModelLifecycleManager(ClusterTestCase):
    """Tests for load, save, checkpoint and recover."""

    def setUp(self):
        super().setUp()
        self.registry.create_matrices([
            MatrixContext("A", rows=10, cols=4),
            MatrixContext("B", rows=6, cols=3, init_strategy="zeros"),
        ])
        self.matrices = self.registry.matrix_client()
        self.manager = ModelLifecycleManager(self.config, self.registry, self.storage)

    def manager_for(self, action_type, **overrides):
        config = self.make_config(action_type=action_type, **overrides)
        return ModelLifecycleManager(config, self.registry, self.storage)

    def test_train_load_reinitializes(self):
        initial = self.matrices.pull("A")
        self.matrices.push("A", np.ones((10, 4)))

        self.manager.load(ModelContext())
        self.assertEqual(self.manager.state, ModelState.LOADED)
        np.testing.assert_array_equal(self.matrices.pull("A"), initial)

        with self.assertRaises(ConfigurationError):
            self.manager.load(ModelContext())

    def test_save_then_incremental_load(self):
        trained = np.random.randn(10, 4).astype(np.float32)
        self.matrices.push("A", trained)
        self.manager.save(ModelContext(path="models/m"))
        self.assertEqual(self.manager.state, ModelState.UNLOADED)

        self.matrices.push("A", np.zeros((10, 4)))
        self.manager_for("inctrain").load(ModelContext(path="models/m"))
        np.testing.assert_array_equal(self.matrices.pull("A"), trained)

    def test_parquet_format(self):
        trained = np.random.randn(6, 3).astype(np.float32)
        self.matrices.push("B", trained)
        self.manager.save(ModelContext(path="models/p", matrix_names=("B",), format="parquet"))

        self.matrices.push("B", np.zeros((6, 3)))
        self.manager_for("inctrain").load(ModelContext(path="models/p", matrix_names=("B",)))
        np.testing.assert_array_equal(self.matrices.pull("B"), trained)

    def test_load_after_interrupted_overwrite(self):
        trained = np.random.randn(10, 4).astype(np.float32)
        self.matrices.push("A", trained)
        self.manager.save(ModelContext(path="models/m"))

        model_dir = os.path.join(self.storage.base_path, "models", "m")
        os.replace(model_dir, model_dir + ".old-dead")

        self.matrices.push("A", np.zeros((10, 4)))
        self.manager_for("inctrain").load(ModelContext(path="models/m"))
        np.testing.assert_array_equal(self.matrices.pull("A"), trained)

    def test_load_rejects_corrupt_model(self):
        self.manager.save(ModelContext(path="models/m"))
        self.storage.write("models/m/A.npz", b"tampered")

        with self.assertRaises(ConfigurationError):
            self.manager_for("inctrain").load(ModelContext(path="models/m"))

    def test_load_missing_model(self):
        with self.assertRaises(ConfigurationError):
            self.manager_for("inctrain").load(ModelContext(path="models/none"))

    def test_save_forbidden_in_predict(self):
        manager = self.manager_for("predict", output_path="out")
        with self.assertRaises(ConfigurationError):
            manager.save(ModelContext(path="models/m"))

    def test_unknown_matrix(self):
        with self.assertRaises(ConfigurationError):
            self.manager.save(ModelContext(path="models/m", matrix_names=("Z",)))

    def test_checkpoint_and_recover(self):
        snapshot = np.random.randn(10, 4).astype(np.float32)
        self.matrices.push("A", snapshot)
        record = self.manager.checkpoint(1)
        self.assertEqual(record.matrix_names, ["A", "B"])

        self.matrices.push("A", np.zeros((10, 4)))
        self.manager.recover(1)

        self.assertEqual(self.manager.state, ModelState.LOADED)
        np.testing.assert_array_equal(self.matrices.pull("A"), snapshot)
        self.assertEqual(self.manager.latest_checkpoint().checkpoint_id, 1)

    def test_load_with_checkpoint_id_recovers(self):
        self.matrices.push("B", np.full((6, 3), 3.0))
        self.manager.checkpoint(4)
        self.matrices.push("B", np.zeros((6, 3)))

        self.manager.load(ModelContext(checkpoint_id=4))
        np.testing.assert_array_equal(self.matrices.pull("B"), np.full((6, 3), 3.0))

    def test_stale_checkpoint_id_rejected_before_pull(self):
        self.manager.checkpoint(2)

        with mock.patch.object(self.matrices, "pull", wraps=self.matrices.pull) as pull:
            with self.assertRaises(ConsistencyError):
                self.manager.checkpoint(2)
            pull.assert_not_called()

        self.assertEqual(self.manager.state, ModelState.UNLOADED)

    def test_recover_missing(self):
        with self.assertRaises(CheckpointNotFoundError):
            self.manager.recover(3)
        self.assertEqual(self.manager.state, ModelState.UNLOADED)

    def test_recover_shape_mismatch(self):
        self.manager.checkpoints.save(5, {"A": np.zeros((3, 3), dtype=np.float32)})
        with self.assertRaises(ConfigurationError):
            self.manager.recover(5)

    def test_legacy_adapter(self):
        class OldModel:
            matrices = {"A": MatrixContext("A", rows=10, cols=4)}
            model_path = "models/old"

        matrices, load_ctx, save_ctx = self.manager.legacy_contexts(OldModel())
        self.assertEqual([m.name for m in matrices], ["A"])
        self.assertEqual(load_ctx.path, "models/old")
        self.assertEqual(save_ctx.matrix_names, ("A",))
        self.assertEqual(load_ctx.schema_version, LegacyModelAdapter.LEGACY_SCHEMA_VERSION)


if __name__ == "__main__":
    unittest.main()
