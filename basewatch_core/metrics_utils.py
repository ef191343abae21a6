import os
from typing import Any, Dict

from prometheus_client import Counter, start_http_server


def init_metrics(logger) -> Dict[str, Any]:
    """Start the Prometheus endpoint if METRICS_PORT is set.

    Returns a dict with keys: enabled, checks, updates_found, rebuilds, failures.
    Counters are None while metrics are disabled.
    """
    result: Dict[str, Any] = {
        'enabled': False,
        'checks': None,
        'updates_found': None,
        'rebuilds': None,
        'failures': None,
    }
    port = os.getenv('METRICS_PORT')
    if not port:
        return result
    addr = os.getenv('METRICS_ADDR', '0.0.0.0')
    try:
        start_http_server(int(port), addr=addr)
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to start metrics: {e}")
        return result
    result['checks'] = Counter('basewatch_checks_total', 'Number of update check cycles')
    result['updates_found'] = Counter('basewatch_updates_found_total', 'Number of container updates found')
    result['rebuilds'] = Counter('basewatch_rebuilds_total', 'Number of rebuilds performed')
    result['failures'] = Counter('basewatch_failures_total', 'Number of failed checks or rebuilds')
    result['enabled'] = True
    logger.info(f"Prometheus metrics server on {addr}:{port}")
    return result


def inc(counter, amount: float = 1) -> None:
    if counter is not None:
        counter.inc(amount)
