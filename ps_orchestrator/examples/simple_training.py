"""
Simple training example using the PS orchestrator.

This example demonstrates:
1. Declaring matrices and starting the PS tier
2. Dispatching training tasks and waiting for the run
3. Saving the model and publishing a checkpoint
4. Recovering from the checkpoint in a fresh session after a crash

Run this example:
    python -m ps_orchestrator.examples.simple_training
"""

import tempfile

import numpy as np

from ps_orchestrator import BaseTask, MatrixContext, ModelContext, PSConfig, PSMainClient


class TrainTask(BaseTask):
    """Adds a fixed delta to the rows of "A" and "B" owned by this task."""

    def run(self, context):
        num_tasks = context.params["num_tasks"]
        for name in ("A", "B"):
            assignment = context.matrices.assignment(name)
            rows = [r for r in range(assignment.rows) if r % num_tasks == context.split.index]
            deltas = np.full((len(rows), assignment.cols), 0.5, dtype=np.float32)
            context.check_cancelled()
            context.matrices.increment_rows(name, rows, deltas)
        return len(rows)


def build_config(base_path: str) -> PSConfig:
    return PSConfig(
        num_servers=3,
        num_workers=4,
        storage_base_path=base_path,
        task_params={"num_tasks": 4},
        log_level="INFO",
    )


def declare_matrices(client: PSMainClient):
    client.add_matrix(MatrixContext("A", rows=100, cols=10))
    client.add_matrix(MatrixContext("B", rows=50, cols=5))


def main():
    """Main training function."""
    print("=" * 60)
    print("PS Orchestrator - Simple Training Example")
    print("=" * 60)

    base_path = tempfile.mkdtemp(prefix="ps_orchestrator_example_")
    config = build_config(base_path)

    # Session 1: train, save and checkpoint, then crash
    print("\n[1] Starting PS tier and training...")
    client = PSMainClient(config, task_registry={"train": TrainTask})
    declare_matrices(client)
    client.start_ps_server()
    client.create_matrices()

    task_ids = client.run_task("train")
    print(f"    Dispatched {len(task_ids)} tasks")
    summary = client.wait_for_completion(timeout=60)
    print(f"    Run {summary['run_id']}: {summary['succeeded']}/{summary['num_tasks']} succeeded "
          f"in {summary['elapsed_seconds']:.2f}s")

    trained = {
        name: client.matrix_registry.matrix_client().pull(name) for name in ("A", "B")
    }

    print("\n[2] Saving model and checkpoint 1...")
    client.save(ModelContext(path="models/simple"))
    record = client.checkpoint(1)
    print(f"    Published checkpoint {record.checkpoint_id} with {record.matrix_names}")

    print("\n[3] Simulating a crash...")
    stragglers = client.kill()
    client.close()
    print(f"    Session killed (state={client.state.value}, stragglers={stragglers})")

    # Session 2: recover the checkpoint
    print("\n[4] Recovering in a fresh session...")
    with PSMainClient(config, task_registry={"train": TrainTask}) as recovered:
        declare_matrices(recovered)
        recovered.start_ps_server()
        recovered.create_matrices()

        latest = recovered.latest_checkpoint()
        recovered.recover(latest.checkpoint_id)

        matrices = recovered.matrix_registry.matrix_client()
        for name, expected in trained.items():
            restored = matrices.pull(name)
            match = np.array_equal(restored, expected)
            print(f"    {name}: shape={restored.shape}, matches checkpoint={match}")
            if not match:
                raise RuntimeError(f"Recovered values of {name} differ from the checkpoint")

        recovered.stop(0)
        print(f"    Session stopped with exit code {int(recovered.exit_code)}")

    print("\n" + "=" * 60)
    print("Example completed successfully!")
    print("=" * 60)


if __name__ == "__main__":
    main()
