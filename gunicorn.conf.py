"""Gunicorn configuration file.

Run with:
    gunicorn -c gunicorn.conf.py "authservice.flask_app:create_app()"

Each worker owns one bounded audit pool (created by create_app); the
worker_exit hook drains it so queued audit events are not lost on a clean
shutdown.
"""
import os

bind = os.environ.get("GUNICORN_BIND", "0.0.0.0:8000")
worker_class = "gthread"
workers = int(os.environ.get("GUNICORN_WORKERS", "2"))
threads = int(os.environ.get("GUNICORN_THREADS", "8"))
timeout = int(os.environ.get("GUNICORN_TIMEOUT", "30"))
accesslog = "-"
errorlog = "-"


def post_fork(server, worker):
    """Called just after a worker has been forked."""
    demo_mode = os.environ.get("DEMO_MODE", "false").lower() == "true"
    if demo_mode:
        worker.log.warning("DEMO_MODE=true: throw-away secrets and local sqlite database in use")
    if not os.environ.get("ALLOWED_GROUPS", "").strip():
        worker.log.warning("ALLOWED_GROUPS is empty; every login will be denied")


def worker_exit(server, worker):
    """Flush pending audit writes before the worker goes away."""
    app = getattr(worker, "wsgi", None)
    config = getattr(app, "config", None)
    if not config or "AUDIT_WRITER" not in config:
        return

    writer = config["AUDIT_WRITER"]
    timeout_seconds = float(os.environ.get("AUDIT_FLUSH_TIMEOUT", "10"))
    if writer.flush(timeout_seconds):
        worker.log.info("Audit writes flushed")
    else:
        worker.log.error(f"Audit writes still pending after {timeout_seconds}s; they will be lost")
    writer.dispatcher.shutdown(wait_for_pending=False)
