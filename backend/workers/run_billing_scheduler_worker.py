from common.workers.launcher import WorkerLauncher
from packages.billing.workers.due_action_worker import DueActionWorker

if __name__ == "__main__":
    WorkerLauncher().run(
        worker_factory=DueActionWorker, worker_name="Billing Scheduler Worker"
    )
