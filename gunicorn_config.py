import multiprocessing

# Gunicorn Production Configuration
# The loyalty screen is used by one or two operators at a time; keep it small
workers = min(multiprocessing.cpu_count() * 2 + 1, 4)
threads = 2
worker_class = 'gthread'

# Resilience
timeout = 60
max_requests = 1000
max_requests_jitter = 100
keepalive = 5

# Logging
accesslog = '-'       # Stdout
errorlog = '-'        # Stderr
loglevel = 'info'
capture_output = True
