"""
Gunicorn configuration for SilverSeal
Serves main:application; worker count and timeouts come from the environment
"""
import os
import multiprocessing

bind = f"0.0.0.0:{os.environ.get('PORT', '5000')}"

workers = int(os.environ.get('GUNICORN_WORKERS', min(multiprocessing.cpu_count() * 2 + 1, 4)))
worker_class = "gthread"
threads = int(os.environ.get('GUNICORN_THREADS', 4))
timeout = int(os.environ.get('GUNICORN_TIMEOUT', 60))
graceful_timeout = 30
keepalive = 5

# Recycle workers to bound memory held by QR rendering buffers
max_requests = 1000
max_requests_jitter = 100

accesslog = "-"
errorlog = "-"
loglevel = os.environ.get('LOG_LEVEL', 'info').lower()

proc_name = "silverseal"

# Lazy-load so each worker opens its own database pool
preload_app = False


def when_ready(server):
    """Called just after the server is started"""
    server.log.info(f"SilverSeal server is ready. Listening at: {bind}")
    server.log.info(f"Using {workers} workers with {worker_class} worker class")


def post_fork(server, worker):
    server.log.info(f"Worker spawned (pid: {worker.pid})")


def worker_int(worker):
    worker.log.info(f"Worker {worker.pid} interrupted")


def on_exit(server):
    server.log.info("Shutting down SilverSeal server...")


if os.environ.get("ENVIRONMENT") != "production":
    workers = 2
    loglevel = "debug"
    reload = True
