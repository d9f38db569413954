"""Tests for PS shard components, placement and the RPC layer."""

import socket
import threading
import time
import unittest

import numpy as np

from ps_orchestrator.communication.protocol import MessageType, ServerInfo
from ps_orchestrator.communication.rpc_handler import RPCClient, RetryPolicy
from ps_orchestrator.communication.serialization import Serializer
from ps_orchestrator.errors import ClusterError, ConnectivityError, ErrorKind
from ps_orchestrator.server.master import Master
from ps_orchestrator.server.matrix_store import MatrixStore, block_seed, init_block
from ps_orchestrator.server.ps_server import PSServer
from ps_orchestrator.utils.config import PSConfig
from ps_orchestrator.utils.sharding import ConsistentHashRing, place_partitions, row_blocks


def matrix_meta(matrix_id=0, name="A", rows=6, cols=3, init_strategy="normal", partitions=None):
    return {
        "matrix_id": matrix_id,
        "name": name,
        "rows": rows,
        "cols": cols,
        "dtype": "float32",
        "storage": "dense",
        "init_strategy": init_strategy,
        "init_scale": 0.1,
        "partitions": partitions or [{"index": 0, "start": 0, "end": 3}, {"index": 1, "start": 3, "end": 6}],
    }


def free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestSharding(unittest.TestCase):
    """Tests for partition placement."""

    def test_row_blocks(self):
        self.assertEqual(row_blocks(10, 4), [(0, 4), (4, 8), (8, 10)])
        self.assertEqual(row_blocks(3, 5), [(0, 3)])
        with self.assertRaises(ValueError):
            row_blocks(0, 1)

    def test_range_placement_round_robin(self):
        placement = place_partitions(1, row_blocks(10, 2), num_servers=3)
        self.assertEqual(placement, {0: 1, 1: 2, 2: 0, 3: 1, 4: 2})

    def test_hash_placement_deterministic(self):
        blocks = row_blocks(100, 5)
        first = place_partitions(4, blocks, num_servers=3, scheme="hash")
        second = place_partitions(4, blocks, num_servers=3, scheme="hash")

        self.assertEqual(first, second)
        self.assertTrue(all(0 <= s < 3 for s in first.values()))

    def test_hash_ring_distribution(self):
        ring = ConsistentHashRing(4)
        counts = [0] * 4
        for i in range(4000):
            counts[ring.get_server(f"matrix_0/part_{i}")] += 1
        self.assertTrue(all(c > 500 for c in counts))


class TestMatrixStore(unittest.TestCase):
    """Tests for per-shard partition storage."""

    def setUp(self):
        self.store = MatrixStore()
        self.store.create(matrix_meta())

    def test_create_initializes_deterministically(self):
        parts = self.store.get_partitions(0)
        self.assertEqual(sorted(parts), [0, 1])
        self.assertEqual(parts[0].shape, (3, 3))

        expected = init_block((3, 3), "normal", 0.1, "float32", block_seed("A", 1), fan=(6, 3))
        np.testing.assert_array_equal(parts[1], expected)

        self.store.init(0)
        np.testing.assert_array_equal(self.store.get_partitions(0)[1], expected)

    def test_create_is_idempotent(self):
        self.store.create(matrix_meta())
        self.assertEqual(len(self.store), 1)

        with self.assertRaises(ValueError):
            self.store.create(matrix_meta(name="other"))

    def test_set_and_add(self):
        self.store.set_partitions(0, {0: np.ones((3, 3))})
        self.store.set_partitions(0, {0: np.ones((3, 3))}, add=True)

        block = self.store.get_partitions(0, [0])[0]
        np.testing.assert_array_equal(block, np.full((3, 3), 2.0))
        self.assertEqual(block.dtype, np.float32)

    def test_shape_mismatch_rejected(self):
        before = self.store.get_partitions(0)
        with self.assertRaises(ValueError):
            self.store.set_partitions(0, {0: np.ones((3, 3)), 1: np.ones((2, 3))})
        np.testing.assert_array_equal(self.store.get_partitions(0)[0], before[0])

    def test_unknown_matrix_or_partition(self):
        with self.assertRaises(KeyError):
            self.store.get_partitions(9)
        with self.assertRaises(KeyError):
            self.store.get_partitions(0, [5])

    def test_sparse_starts_at_zero(self):
        meta = matrix_meta(matrix_id=1, name="S")
        meta["storage"] = "sparse"
        self.store.create(meta)
        self.assertFalse(self.store.get_partitions(1)[0].any())

    def test_drop(self):
        self.assertEqual(self.store.drop([0, 7]), [0])
        self.assertNotIn(0, self.store)


class TestSerializer(unittest.TestCase):
    """Tests for control message serialization."""

    def test_numpy_payload(self):
        serializer = Serializer(compression=False)
        payload = {"partitions": {0: np.arange(6, dtype=np.float32).reshape(2, 3)}, "seed": 3}

        restored = serializer.deserialize(serializer.serialize(payload))
        np.testing.assert_array_equal(restored["partitions"][0], payload["partitions"][0])
        self.assertEqual(restored["seed"], 3)

        # Pulled blocks are mutated by callers
        restored["partitions"][0] += 1

    def test_unknown_flag(self):
        with self.assertRaises(ValueError):
            Serializer(compression=False).deserialize(b"\x07abc")


class TestRPC(unittest.TestCase):
    """Tests for RPC retries and shard request handling."""

    @classmethod
    def setUpClass(cls):
        cls.config = PSConfig(num_servers=1)
        cls.server = PSServer(0, cls.config)
        cls.info = cls.server.start()

    @classmethod
    def tearDownClass(cls):
        cls.server.shutdown(grace_period_seconds=1)

    def setUp(self):
        self.client = RPCClient(timeout=5, retry_policy=RetryPolicy(attempts=2, initial_delay=0.01))

    def tearDown(self):
        self.client.close()

    def test_ping(self):
        response = self.client.request(self.info.host, self.info.port, MessageType.PING)
        self.assertEqual(response["server_id"], 0)
        self.assertEqual(response["status"], "ready")

    def test_create_push_pull(self):
        self.client.request(
            self.info.host, self.info.port, MessageType.CREATE_MATRICES,
            {"matrices": [matrix_meta(matrix_id=5, name="rpc")]},
        )
        self.client.request(
            self.info.host, self.info.port, MessageType.PUSH_PARTITIONS,
            {"matrix_id": 5, "partitions": {0: np.zeros((3, 3))}, "mode": "set"},
        )
        response = self.client.request(
            self.info.host, self.info.port, MessageType.PULL_PARTITIONS,
            {"matrix_id": 5, "indices": [0]},
        )
        np.testing.assert_array_equal(response["partitions"][0], np.zeros((3, 3)))

    def test_error_response_is_configuration_error(self):
        with self.assertRaises(ClusterError) as ctx:
            self.client.request(
                self.info.host, self.info.port, MessageType.PULL_PARTITIONS, {"matrix_id": 404}
            )
        self.assertEqual(ctx.exception.kind, ErrorKind.CONFIGURATION)

    def test_unreachable_peer(self):
        with self.assertRaises(ConnectivityError):
            self.client.request("127.0.0.1", free_port(), MessageType.PING)

    def test_cancelled_retry(self):
        cancel = threading.Event()
        cancel.set()
        client = RPCClient(timeout=1, retry_policy=RetryPolicy(attempts=5, initial_delay=5.0))
        try:
            with self.assertRaises(ClusterError) as ctx:
                client.request("127.0.0.1", free_port(), MessageType.PING, cancel_event=cancel)
            self.assertEqual(ctx.exception.kind, ErrorKind.KILLED)
        finally:
            client.close()


class SlowMatrixStore(MatrixStore):
    """Applies writes, then stalls before the shard can answer."""

    def set_partitions(self, matrix_id, blocks, add=False):
        super().set_partitions(matrix_id, blocks, add=add)
        time.sleep(0.4)


class TestSlowShard(unittest.TestCase):
    """Tests for requests that time out after reaching the shard."""

    def setUp(self):
        self.server = PSServer(0, PSConfig(num_servers=1))
        self.server._store = SlowMatrixStore()
        self.info = self.server.start()

        self.client = RPCClient(timeout=0.2, retry_policy=RetryPolicy(attempts=3, initial_delay=0.01))
        self.client.request(
            self.info.host, self.info.port, MessageType.CREATE_MATRICES,
            {"matrices": [matrix_meta(init_strategy="zeros")]},
        )

    def tearDown(self):
        self.client.close()
        self.server.shutdown(grace_period_seconds=2)

    def test_increment_applied_once(self):
        with self.assertRaises(ConnectivityError):
            self.client.request(
                self.info.host, self.info.port, MessageType.PUSH_PARTITIONS,
                {"matrix_id": 0, "partitions": {0: np.ones((3, 3))}, "mode": "add"},
                idempotent=False,
            )

        time.sleep(0.6)
        np.testing.assert_array_equal(self.server.store.get_partitions(0, [0])[0], np.ones((3, 3)))


class TestMaster(unittest.TestCase):
    """Tests for shard allocation by the master."""

    def setUp(self):
        self.master = Master(PSConfig(num_servers=2))
        self.master_info = self.master.start()

    def tearDown(self):
        self.master.shutdown(grace_period_seconds=1)

    def test_allocate_over_rpc(self):
        with RPCClient(timeout=5) as client:
            response = client.request(
                self.master_info.host, self.master_info.port, MessageType.ALLOCATE_PS, {"num_servers": 2}
            )
            servers = [ServerInfo.from_dict(s) for s in response["servers"]]

            self.assertEqual([s.server_id for s in servers], [0, 1])
            for server in servers:
                ping = client.request(server.host, server.port, MessageType.PING)
                self.assertEqual(ping["server_id"], server.server_id)

    def test_allocate_is_idempotent(self):
        first = self.master.allocate(2)
        second = self.master.allocate(2)
        self.assertEqual([s.port for s in first], [s.port for s in second])

        with self.assertRaises(ValueError):
            self.master.allocate(3)

    def test_kill(self):
        self.master.allocate(2)
        stragglers = self.master.kill(ack_timeout=2.0)

        self.assertEqual(stragglers, [])
        self.assertFalse(self.master.is_running)
        self.assertEqual(self.master.servers, [])


if __name__ == "__main__":
    unittest.main()
