# gunicorn.conf.py  (gunicorn -c gunicorn.conf.py)
import os

wsgi_app = "lpu.main:app"
bind = f"0.0.0.0:{os.getenv('PORT', '8080')}"

# price-list locks live in process memory: more than one worker means two
# runs on the same list are no longer serialized
workers = int(os.getenv("WEB_CONCURRENCY", "1"))
worker_class = "uvicorn.workers.UvicornWorker"
preload_app = False

# an apply-rules run can take a while on big lists
timeout = int(os.getenv("WEB_TIMEOUT", "120"))
graceful_timeout = 30
keepalive = 5
max_requests = 1000
max_requests_jitter = 100
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
