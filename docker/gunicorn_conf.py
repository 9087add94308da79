# Gunicorn configuration for pullsnap
# Only one worker may run the scan loop

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('PULLSNAP_BIND', '127.0.0.1:8000')
wsgi_app = 'pullsnap:create_app()'


def post_fork(server, worker):
    """
    Called in the worker process right after it is forked, before the app loads.

    Designates the first spawned worker (worker.age == 1) as the scan loop
    owner. Two scan loops would sync and evict the same destination
    concurrently.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance (age counts spawned workers: 1, 2, 3, ...)
    """
    if worker.age == 1:
        os.environ['SCAN_LOOP_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCAN LOOP OWNER")
    else:
        os.environ['SCAN_LOOP_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Standard HTTP worker (scan loop disabled)")
