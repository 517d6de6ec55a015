import os


def cpu():
    return max(1, (os.cpu_count() or 1))


bind = os.getenv("GUNI_BIND", "0.0.0.0:8000")
wsgi_app = "config.wsgi:application"

# Workers: the pipeline blocks on ERP queries and remote API calls
workers = int(os.getenv("GUNI_WORKERS", str(min(max(2, cpu() * 2), 8))))
worker_class = "gthread"
threads = int(os.getenv("GTHREADS", "4"))

# Remote calls are bounded by HTTP_TIMEOUT_SECS * HTTP_RETRY_MAX; keep headroom
timeout = int(os.getenv("GUNI_TIMEOUT", "90"))
graceful_timeout = int(os.getenv("GUNI_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNI_KEEPALIVE", "5"))

preload_app = True
max_requests = int(os.getenv("GUNI_MAX_REQUESTS", "2000"))
max_requests_jitter = int(os.getenv("GUNI_MAX_REQUESTS_JITTER", "200"))

accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNI_LOGLEVEL", "info")
access_log_format = '{"remote": "%(h)s", "request": "%(r)s", "status": %(s)s, "bytes": "%(b)s", "duration_us": %(D)s, "request_id": "%({x-request-id}o)s"}'
