import os

wsgi_app = "config.wsgi:application"
bind = os.getenv("GUNI_BIND", "0.0.0.0:8000")


def cpu():
    return max(1, (os.cpu_count() or 1))


# Workers
workers = int(os.getenv("GUNI_WORKERS", str(min(max(2, cpu() * 2), 8))))

# Threads per worker; checkout blocks on the inventory service and the payment providers
worker_class = "gthread"
threads = int(os.getenv("GTHREADS", "4"))

# Timeouts must stay above HTTP_TIMEOUT_SECS * (HTTP_RETRY_MAX + 1) for each outbound call
timeout = int(os.getenv("GUNI_TIMEOUT", "60"))
graceful_timeout = int(os.getenv("GUNI_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNI_KEEPALIVE", "5"))

# Services are wired in CheckoutConfig.ready(), once per worker after fork
preload_app = False
max_requests = int(os.getenv("GUNI_MAX_REQUESTS", "2000"))
max_requests_jitter = int(os.getenv("GUNI_MAX_REQUESTS_JITTER", "200"))

# Application logs go through Django's LOGGING (JSON); these are gunicorn's own
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNI_LOGLEVEL", "info")
