import multiprocessing
import os

bind = os.getenv("ACADEMY_BIND", "127.0.0.1:8000")
wsgi_app = "academy.main:app"
workers = int(os.getenv("ACADEMY_WORKERS", (multiprocessing.cpu_count() * 2) + 1))
worker_class = "uvicorn.workers.UvicornWorker"
timeout = 60
graceful_timeout = 30
keepalive = 5
loglevel = "info"
accesslog = "-"
errorlog = "-"
