from worker.main import run

raise SystemExit(run())
