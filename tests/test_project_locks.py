import threading
import time

from panel.panel_backend import PanelBackend
from panel.project_locks import ProjectLockRegistry

from conftest import DEVELOPER


def test_hold_serializes_one_project():
    locks = ProjectLockRegistry()
    order = []

    def worker(tag):
        with locks.hold("p1"):
            order.append(f"{tag}:in")
            time.sleep(0.05)
            order.append(f"{tag}:out")

    threads = [threading.Thread(target=worker, args=(t,)) for t in ("a", "b")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    # no interleaving
    assert order[0].split(":")[0] == order[1].split(":")[0]
    assert order[2].split(":")[0] == order[3].split(":")[0]


def test_sweep_skips_held_locks():
    locks = ProjectLockRegistry()
    with locks.hold("busy"):
        with locks.hold("other"):
            pass
        assert locks.sweep_idle(max_idle_seconds=0) == 1
        assert len(locks) == 1
    assert locks.sweep_idle(max_idle_seconds=0) == 1
    assert len(locks) == 0


def test_releases_sweep_idle_entries():
    locks = ProjectLockRegistry(max_idle_seconds=0, sweep_every=3)
    for pid in ("p1", "p2"):
        with locks.hold(pid):
            pass
    assert len(locks) == 2

    with locks.hold("p3"):
        pass
    # third release swept every idle entry, p3 included
    assert len(locks) == 0


def test_backend_locks_do_not_accumulate(session_factory, sampler, store):
    locks = ProjectLockRegistry(max_idle_seconds=0, sweep_every=1)
    backend = PanelBackend(session_factory, sampler=sampler, document_store=store, locks=locks)
    for i in range(3):
        project = backend.create_project(DEVELOPER, f"P{i}", "mongodb://localhost", "crm", "customers")
        backend.refresh_schema(DEVELOPER, project["id"])
    assert len(locks) == 0
