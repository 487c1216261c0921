"""Utilities for the encrypted voting system."""

from .utils import (
    setup_logging,
    save_results,
    PerformanceMonitor,
    create_performance_report,
    create_results_summary,
    generate_secure_id,
    format_duration,
    get_system_info
)

__all__ = [
    'setup_logging',
    'save_results',
    'PerformanceMonitor',
    'create_performance_report',
    'create_results_summary',
    'generate_secure_id',
    'format_duration',
    'get_system_info'
]
