"""Utilities for the Teen Patti ZK pipeline."""

from .utils import (
    setup_logging,
    PerformanceMonitor,
    create_performance_report,
    format_bytes,
    format_duration,
    generate_secure_id,
    get_system_info
)

__all__ = [
    'setup_logging',
    'PerformanceMonitor',
    'create_performance_report',
    'format_bytes',
    'format_duration',
    'generate_secure_id',
    'get_system_info'
]
