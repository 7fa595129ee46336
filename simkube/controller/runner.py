# simkube/controller/runner.py
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional, Set

from kubernetes import watch
from kubernetes.client.exceptions import ApiException

from simkube.constants import SIMKUBE_GROUP, SIMKUBE_VERSION, SIMULATION_LABEL_KEY, SIMULATION_PLURAL
from simkube.controller.reconciler import Action, reconcile
from simkube.core.config import Settings
from simkube.models.simulation import Simulation
from simkube.services.kubernetes_service import KubernetesService, is_not_found

logger = logging.getLogger(__name__)


class SimulationController:
    """
    Drives `reconcile` for every Simulation in the cluster.

    Two watch threads (Simulations, and driver Jobs labelled with the simulation
    name) enqueue simulation names; a worker pool reconciles them. A name is
    never reconciled by two workers at once: events that arrive mid-pass mark it
    dirty and it runs again once the current pass finishes.
    """

    def __init__(self, k8s: KubernetesService, opts: Settings):
        self.k8s = k8s
        self.opts = opts
        self._executor = ThreadPoolExecutor(max_workers=opts.CONTROLLER_WORKERS, thread_name_prefix="reconcile")
        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()
        self._dirty: Set[str] = set()
        self._timers: Dict[str, threading.Timer] = {}
        self._running = False
        self._stopped = False
        self._watches = [watch.Watch(), watch.Watch()]

    def enqueue(self, name: str):
        with self._lock:
            if self._stopped:
                return
            timer = self._timers.pop(name, None)
            if timer is not None:
                timer.cancel()
            if name in self._in_flight:
                self._dirty.add(name)
                return
            self._in_flight.add(name)
        self._executor.submit(self._run_once, name)

    def _schedule(self, name: str, delay: float):
        timer = threading.Timer(delay, self.enqueue, args=(name,))
        timer.daemon = True
        with self._lock:
            old = self._timers.pop(name, None)
            if old is not None:
                old.cancel()
            self._timers[name] = timer
        timer.start()

    def _fetch(self, name: str) -> Optional[Simulation]:
        try:
            obj = self.k8s.custom_api.get_cluster_custom_object(
                SIMKUBE_GROUP, SIMKUBE_VERSION, SIMULATION_PLURAL, name)
        except ApiException as e:
            if is_not_found(e):
                return None
            raise
        return Simulation(**obj)

    def _run_once(self, name: str):
        action: Optional[Action] = None
        try:
            sim = self._fetch(name)
            if sim is None:
                logger.info(f"Simulation {name} no longer exists; dropping")
            else:
                action = reconcile(sim, self.k8s, self.opts)
        except Exception as e:
            logger.error(f"Reconcile of simulation {name} failed: {e}", exc_info=True)
            action = Action.requeue(self.opts.ERROR_REQUEUE_SECONDS)

        with self._lock:
            self._in_flight.discard(name)
            rerun = name in self._dirty
            self._dirty.discard(name)

        if rerun:
            self.enqueue(name)
        elif action is not None and action.requeue_after is not None:
            logger.debug(f"Requeueing simulation {name} in {action.requeue_after}s")
            self._schedule(name, action.requeue_after)

    def _watch_simulations(self):
        w = self._watches[0]
        while self._running:
            try:
                stream = w.stream(
                    self.k8s.custom_api.list_cluster_custom_object,
                    group=SIMKUBE_GROUP,
                    version=SIMKUBE_VERSION,
                    plural=SIMULATION_PLURAL,
                    timeout_seconds=60,
                )
                for event in stream:
                    if not self._running:
                        break
                    obj = event.get("object") or {}
                    name = (obj.get("metadata") or {}).get("name")
                    if name and event.get("type") in ("ADDED", "MODIFIED"):
                        self.enqueue(name)
            except ApiException as e:
                if e.status == 410:
                    logger.warning("Simulation watch resource version too old, restarting watch")
                    continue
                logger.error(f"API exception watching simulations: {e}")
                time.sleep(5)
            except Exception as e:
                logger.error(f"Unexpected error watching simulations: {e}", exc_info=True)
                time.sleep(5)

    def _watch_driver_jobs(self):
        w = self._watches[1]
        while self._running:
            try:
                stream = w.stream(
                    self.k8s.batch_api.list_job_for_all_namespaces,
                    label_selector=SIMULATION_LABEL_KEY,
                    timeout_seconds=60,
                )
                for event in stream:
                    if not self._running:
                        break
                    job = event.get("object")
                    labels = (job.metadata.labels if job is not None and job.metadata else None) or {}
                    name = labels.get(SIMULATION_LABEL_KEY)
                    if name:
                        self.enqueue(name)
            except ApiException as e:
                if e.status == 410:
                    logger.warning("Driver job watch resource version too old, restarting watch")
                    continue
                logger.error(f"API exception watching driver jobs: {e}")
                time.sleep(5)
            except Exception as e:
                logger.error(f"Unexpected error watching driver jobs: {e}", exc_info=True)
                time.sleep(5)

    def run(self):
        """Blocks until `stop` is called."""
        self._running = True
        threads = [
            threading.Thread(target=self._watch_simulations, daemon=True, name="watch-simulations"),
            threading.Thread(target=self._watch_driver_jobs, daemon=True, name="watch-driver-jobs"),
        ]
        for t in threads:
            t.start()
        logger.info("Simulation controller started")
        for t in threads:
            t.join()
        logger.info("Simulation controller stopped")

    def stop(self):
        self._running = False
        for w in self._watches:
            w.stop()
        with self._lock:
            self._stopped = True
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
        self._executor.shutdown(wait=False)
