from __future__ import annotations

from arq import run_worker

from tenantplane.core.logging import configure_logging
from tenantplane.workers.provisioning_worker import WorkerSettings


def main() -> None:
    # Run the arq worker in-process so deployments need no separate arq CLI entrypoint.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
