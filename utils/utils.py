"""
Utilities for the encrypted governance voting system
Logging setup, performance monitoring, identifiers and result persistence
"""

import logging
import json
import time
import secrets
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Any, List, Optional
import platform
from dataclasses import dataclass, asdict

import numpy as np
import psutil


@dataclass
class PerformanceMetrics:
    operation: str
    duration_seconds: float
    cpu_percent: float
    memory_mb: float
    timestamp: float
    additional_data: Optional[Dict[str, Any]] = None


def setup_logging(log_level: str = "INFO", log_file: Optional[Path] = None):
    """Setup logging to a timestamped file under logs/ and the console"""
    if log_file is None:
        log_dir = Path("logs")
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / \
            f"fhe_vote_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    # Clear existing handlers to avoid duplicates
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )

    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized. Log file: {log_file}")

    return logger


def _operation_stats(metrics: List[PerformanceMetrics]) -> Dict[str, Any]:
    durations = np.array([m.duration_seconds for m in metrics])
    cpu = [m.cpu_percent for m in metrics if m.cpu_percent > 0]
    memory = [m.memory_mb for m in metrics if m.memory_mb > 0]
    elapsed = float(durations.sum())

    return {
        'count': len(metrics),
        'failures': sum(1 for m in metrics if (m.additional_data or {}).get('exception')),
        'total_duration': elapsed,
        'avg_duration': float(durations.mean()),
        'min_duration': float(durations.min()),
        'max_duration': float(durations.max()),
        'std_duration': float(durations.std()) if len(durations) > 1 else 0.0,
        'avg_cpu_percent': float(np.mean(cpu)) if cpu else 0.0,
        'avg_memory_mb': float(np.mean(memory)) if memory else 0.0,
        'peak_memory_mb': max(memory, default=0.0),
        'throughput_ops_per_sec': len(metrics) / elapsed if elapsed > 0 else 0.0
    }


class PerformanceMonitor:
    """Collects one PerformanceMetrics sample per orchestrated operation.

    Use start_operation() as a context manager around a call; a sample is
    recorded on exit whether the call returned or raised.
    """

    def __init__(self):
        self.metrics: List[PerformanceMetrics] = []
        self.process = psutil.Process()

    def start_operation(self, operation_name: str) -> 'OperationContext':
        return OperationContext(self, operation_name)

    def record_metric(self, metric: PerformanceMetrics):
        self.metrics.append(metric)

    def get_summary(self) -> Dict[str, Any]:
        """Per-operation statistics keyed by operation name"""
        by_name: Dict[str, List[PerformanceMetrics]] = {}
        for metric in self.metrics:
            by_name.setdefault(metric.operation, []).append(metric)

        operations = {name: _operation_stats(group) for name, group in by_name.items()}
        return {
            'total_operations': len(self.metrics),
            'total_duration': sum(op['total_duration'] for op in operations.values()),
            'operations': operations
        }

    def reset(self):
        self.metrics.clear()


class OperationContext:
    """Times one operation and samples process CPU and RSS at both ends"""

    def __init__(self, monitor: PerformanceMonitor, operation_name: str):
        self.monitor = monitor
        self.operation_name = operation_name
        self.started_at = 0.0
        self.entry_sample = (0.0, 0.0)

    def _sample(self):
        try:
            process = self.monitor.process
            return process.cpu_percent(), process.memory_info().rss / (1024 * 1024)
        except psutil.Error as e:
            logging.debug(f"Process sampling unavailable: {e}")
            return 0.0, self.entry_sample[1]

    def __enter__(self):
        self.started_at = time.time()
        self.entry_sample = self._sample()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.time() - self.started_at
        entry_cpu, entry_memory = self.entry_sample
        exit_cpu, exit_memory = self._sample()
        both_sampled = entry_cpu > 0 and exit_cpu > 0

        self.monitor.record_metric(PerformanceMetrics(
            operation=self.operation_name,
            duration_seconds=duration,
            cpu_percent=(entry_cpu + exit_cpu) / 2 if both_sampled else 0.0,
            memory_mb=max(entry_memory, exit_memory),
            timestamp=self.started_at,
            additional_data={'exception': exc_type is not None}
        ))


def get_system_info() -> Dict[str, Any]:
    info = {
        'platform': platform.platform(),
        'python_version': platform.python_version(),
        'machine': platform.machine(),
        'system': platform.system(),
        'timestamp': datetime.now().isoformat()
    }

    try:
        vm = psutil.virtual_memory()
        info.update({
            'cpu_count_logical': psutil.cpu_count(logical=True),
            'total_memory_gb': round(vm.total / 1024 / 1024 / 1024, 2),
            'memory_percent_used': vm.percent
        })
    except psutil.Error as e:
        logging.debug(f"System info error: {e}")
        info['psutil_error'] = str(e)

    return info


def generate_secure_id(prefix: str = "", length: int = 16) -> str:
    """Generate secure random ID with optional prefix"""
    random_part = secrets.token_hex(length // 2)
    timestamp = int(time.time() * 1000)

    if prefix:
        return f"{prefix}-{timestamp}_{random_part}"
    return f"{timestamp}_{random_part}"


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format"""
    if seconds < 1:
        return f"{seconds*1000:.1f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    minutes = int(seconds // 60)
    return f"{minutes}m {seconds % 60:.1f}s"


def _to_serializable(obj):
    if hasattr(obj, '__dataclass_fields__'):
        return _to_serializable(asdict(obj))
    elif isinstance(obj, dict):
        return {str(k): _to_serializable(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple, set)):
        return [_to_serializable(item) for item in obj]
    elif isinstance(obj, (np.integer, np.floating)):
        return obj.item()
    elif isinstance(obj, bytes):
        return "0x" + obj.hex()
    elif isinstance(obj, Path):
        return str(obj)
    elif isinstance(obj, datetime):
        return obj.isoformat()
    elif isinstance(obj, Enum):
        return obj.value
    return obj


def save_results(results: Dict[str, Any], filepath: Path):
    """Save results to JSON plus a human-readable summary next to it"""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    enhanced_results = {
        'metadata': {
            'generated_at': datetime.now().isoformat(),
            'system_info': get_system_info(),
            'file_path': str(filepath)
        },
        'data': _to_serializable(results)
    }

    with open(filepath, 'w') as f:
        json.dump(enhanced_results, f, indent=2, default=str)

    summary_path = filepath.parent / f"{filepath.stem}_summary.txt"
    with open(summary_path, 'w') as f:
        f.write(create_results_summary(results))

    logging.info(f"Results saved to {filepath}")
    logging.info(f"Summary saved to {summary_path}")


def create_results_summary(results: Dict[str, Any]) -> str:
    """Human-readable summary of a demo run"""
    summary = []
    summary.append("=" * 80)
    summary.append("ENCRYPTED GOVERNANCE VOTING - RESULTS SUMMARY")
    summary.append("=" * 80)
    summary.append(
        f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    summary.append("")

    if 'stats' in results:
        summary.append("PROPOSAL STATISTICS:")
        for key, value in _to_serializable(results['stats']).items():
            summary.append(f"  {key}: {value}")
        summary.append("")

    if 'verifications' in results:
        summary.append("VERIFIED VOTES:")
        for item in _to_serializable(results['verifications']):
            summary.append(
                f"  {item['proposal_id']}: {item['value']} (verified by {item['verified_by']})")
        summary.append("")

    if 'failures' in results and results['failures']:
        summary.append("FAILURES:")
        for failure in results['failures']:
            summary.append(f"  {failure}")
        summary.append("")

    summary.append("=" * 80)
    return "\n".join(summary)


def create_performance_report(metrics: PerformanceMonitor) -> str:
    """Create detailed performance report from metrics"""
    summary = metrics.get_summary()

    report = []
    report.append("=" * 80)
    report.append("ENCRYPTED GOVERNANCE VOTING - PERFORMANCE REPORT")
    report.append("=" * 80)
    report.append(f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    report.append(f"Total Operations: {summary.get('total_operations', 0)}")
    report.append(
        f"Total Duration: {format_duration(summary.get('total_duration', 0.0))}")
    report.append("")

    if summary['operations']:
        report.append("OPERATION BREAKDOWN:")
        report.append("-" * 60)

        for op_name, op_data in summary['operations'].items():
            report.append(f"\n{op_name.upper()}:")
            report.append(f"  Executions: {op_data['count']}")
            report.append(f"  Failures: {op_data['failures']}")
            report.append(
                f"  Average Time: {format_duration(op_data['avg_duration'])}")
            report.append(
                f"  Min/Max Time: {op_data['min_duration']:.4f}s / {op_data['max_duration']:.4f}s")
            report.append(f"  Std Deviation: {op_data['std_duration']:.4f}s")
            if op_data['peak_memory_mb'] > 0:
                report.append(
                    f"  Peak Memory: {op_data['peak_memory_mb']:.1f} MB")
    else:
        report.append("No performance data available.")

    report.append("")
    report.append("=" * 80)
    return "\n".join(report)
