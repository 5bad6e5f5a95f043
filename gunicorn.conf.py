import multiprocessing
import os

wsgi_app = "docgate:create_app()"

# Sensible defaults for a small dyno/container; tune as needed
workers = int(os.environ.get("WEB_CONCURRENCY", (multiprocessing.cpu_count() * 2) + 1))
threads = int(os.environ.get("GUNICORN_THREADS", 2))
worker_class = "gthread"
# create_app() runs db.create_all(); do it once in the master
preload_app = True
bind = os.environ.get("BIND", ":8000")
# Heroku/Render style proxy headers
forwarded_allow_ips = "*"
# Store calls are bounded by STORE_TIMEOUT, mail calls by NOTIFY_TIMEOUT
timeout = 60
keepalive = 75
# Access and error logs go to stdout next to the app's logging output
accesslog = "-"
errorlog = "-"
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
