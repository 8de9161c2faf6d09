"""
Sidecar Reaper entry point.

Wires settings, the action catalog, the Kubernetes client, metrics and the
pod controller together, and runs them until SIGINT/SIGTERM.
"""

import asyncio
import logging
import signal
import sys

from .actions import load_catalog
from .config import get_settings
from .metrics import ReaperMetrics, create_metrics_server
from .services.controller import PodController
from .services.kubernetes import ShutdownExecutor, get_k8s_client
from .services.reconciler import Reconciler

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def run() -> None:
    # Refuse to start on a malformed catalog
    actions = load_catalog(settings.actions_file)

    k8s = get_k8s_client(settings.watch_namespace)
    metrics = ReaperMetrics()

    executor = ShutdownExecutor(
        k8s,
        exec_timeout=settings.exec_timeout_seconds,
        http_workers=settings.http_trigger_workers
    )
    reconciler = Reconciler(
        k8s=k8s,
        executor=executor,
        actions=actions,
        metrics=metrics,
        controller_name=settings.controller_name,
        controller_instance=settings.reporting_instance,
        job_label_key=settings.job_label_key,
        requeue_seconds=settings.requeue_seconds,
        error_requeue_seconds=settings.error_requeue_seconds,
        resync_idle_pods=settings.resync_idle_pods,
    )
    controller = PodController(
        k8s,
        reconciler,
        label_selector=settings.pod_label_selector,
        watch_timeout_seconds=settings.watch_timeout_seconds,
    )
    server = create_metrics_server(metrics, settings.metrics_host, settings.metrics_port)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, controller.stop)

    metrics_task = asyncio.create_task(server.serve())
    controller_task = asyncio.create_task(controller.run())

    # Whichever finishes first (signal, fatal watch error, metrics bind
    # failure) shuts the other one down
    await asyncio.wait({metrics_task, controller_task}, return_when=asyncio.FIRST_COMPLETED)

    controller.stop()
    try:
        await controller_task
    finally:
        server.should_exit = True
        await metrics_task
        executor.close()
        logger.info("Stopped prometheus server successfully")


def main() -> None:
    logger.info(f"Starting {settings.controller_name}")
    try:
        asyncio.run(run())
    except Exception as e:
        logger.error(f"{settings.controller_name} exited with error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
