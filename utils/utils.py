"""
Utilities Module for the Self-Tallying Election Orchestrator
Logging setup, the operation audit log and result persistence
"""

import logging
import json
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, List, Optional
import platform
from dataclasses import dataclass, asdict, field

import numpy as np
import psutil

logger = logging.getLogger(__name__)


@dataclass
class AuditRecord:
    operation: str
    duration_seconds: float
    gas_used: Optional[int]
    voter_count: int
    unit: str
    memory_mb: float
    timestamp: float
    local_call: bool = False
    failed: bool = False
    additional_data: Dict[str, Any] = field(default_factory=dict)

    def summary_line(self) -> str:
        """Render the record the way logSummary.txt stores it"""
        millis = int(round(self.duration_seconds * 1000))
        subject = f"{self.voter_count} {self.unit}{'' if self.voter_count == 1 else 's'}"
        if self.local_call or self.gas_used is None:
            return f"{self.operation} LOCAL CALL duration: {millis}millis for {subject}\n"
        return (f"{self.operation} duration: {millis}millis and gas used: "
                f"{self.gas_used} for {subject}\n")


def setup_logging(log_level: str = "INFO", log_file: Optional[Path] = None):
    """Setup logging to a timestamped file under logs/ plus the console"""
    if log_file is None:
        log_dir = Path("logs")
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / \
            f"election_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

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
    logging.getLogger("web3").setLevel(logging.WARNING)

    logger.info(f"Logging initialized. Log file: {log_file}")

    return logger


class AuditLog:
    """
    Append-only record of each operation's wall-clock duration and ledger
    execution cost, keyed by operation name and voter count.

    Every record is also appended as one human readable line to the summary
    file (logSummary.txt by default). The first record of a run truncates it.
    """

    def __init__(self, summary_file: Optional[Path] = None):
        self.records: List[AuditRecord] = []
        self.summary_file = Path(summary_file) if summary_file else None
        self.process = psutil.Process()
        self._first_write = True

    def measure(self, operation: str, voter_count: int = 1, unit: str = "voter",
                local_call: bool = False) -> 'AuditEntry':
        """Time an operation - returns context manager"""
        return AuditEntry(self, operation, voter_count, unit, local_call)

    def record(self, record: AuditRecord):
        self.records.append(record)
        if record.failed or self.summary_file is None:
            return

        mode = 'w' if self._first_write else 'a'
        try:
            self.summary_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.summary_file, mode) as f:
                f.write(record.summary_line())
            self._first_write = False
        except OSError as e:
            logger.warning(f"Could not write audit summary {self.summary_file}: {e}")

    def total_gas(self, operation: Optional[str] = None) -> int:
        return sum(r.gas_used or 0 for r in self.records
                   if not r.failed and (operation is None or r.operation == operation))

    def get_summary(self) -> Dict[str, Any]:
        """Aggregate records per operation"""
        if not self.records:
            return {
                'total_operations': 0,
                'total_duration': 0.0,
                'total_gas': 0,
                'operations': {}
            }

        operation_groups: Dict[str, List[AuditRecord]] = {}
        for record in self.records:
            operation_groups.setdefault(record.operation, []).append(record)

        summary = {
            'total_operations': len(self.records),
            'operations': {}
        }

        for op_name, records in operation_groups.items():
            durations = np.array([r.duration_seconds for r in records])
            gas = np.array([r.gas_used for r in records if r.gas_used], dtype=float)
            memory = np.array([r.memory_mb for r in records if r.memory_mb > 0])

            summary['operations'][op_name] = {
                'count': len(records),
                'failures': sum(1 for r in records if r.failed),
                'total_duration': float(durations.sum()),
                'avg_duration': float(durations.mean()),
                'min_duration': float(durations.min()),
                'max_duration': float(durations.max()),
                'std_duration': float(durations.std()) if len(durations) > 1 else 0.0,
                'total_gas': int(gas.sum()) if gas.size else 0,
                'avg_gas': float(gas.mean()) if gas.size else 0.0,
                'peak_memory_mb': float(memory.max()) if memory.size else 0.0,
            }

        summary['total_duration'] = sum(
            op_data['total_duration']
            for op_data in summary['operations'].values()
        )
        summary['total_gas'] = sum(
            op_data['total_gas']
            for op_data in summary['operations'].values()
        )

        return summary

    def save_metrics(self, filepath: Path):
        """Save records and summary to a JSON file"""
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        metrics_data = {
            'records': [asdict(r) for r in self.records],
            'summary': self.get_summary(),
            'system_info': get_system_info(),
            'timestamp': datetime.now().isoformat()
        }

        with open(filepath, 'w') as f:
            json.dump(metrics_data, f, indent=2, default=str)

class AuditEntry:
    """Context manager for a single audited operation"""

    def __init__(self, audit: AuditLog, operation: str, voter_count: int,
                 unit: str, local_call: bool):
        self.audit = audit
        self.operation = operation
        self.voter_count = voter_count
        self.unit = unit
        self.local_call = local_call
        self.gas_used: Optional[int] = None
        self.failed = False
        self.start_time = None

    def receipt(self, receipt) -> None:
        """Take gas and outcome from a ledger transaction receipt"""
        self.gas_used = receipt.gas_used
        self.failed = not receipt.success

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.time() - self.start_time
        try:
            memory_mb = self.audit.process.memory_info().rss / 1024 / 1024
        except psutil.Error as e:
            logger.debug(f"Memory sampling error: {e}")
            memory_mb = 0.0

        self.audit.record(AuditRecord(
            operation=self.operation,
            duration_seconds=duration,
            gas_used=None if self.local_call else self.gas_used,
            voter_count=self.voter_count,
            unit=self.unit,
            memory_mb=memory_mb,
            timestamp=self.start_time,
            local_call=self.local_call,
            failed=self.failed or exc_type is not None,
            additional_data={'exception': exc_type.__name__} if exc_type else {}
        ))
        return False


def get_system_info() -> Dict[str, Any]:
    """Get host information stored alongside metrics"""
    vm = psutil.virtual_memory()
    return {
        'platform': platform.platform(),
        'python_version': platform.python_version(),
        'machine': platform.machine(),
        'cpu_count_logical': psutil.cpu_count(logical=True),
        'total_memory_gb': round(vm.total / 1024 / 1024 / 1024, 2),
        'timestamp': datetime.now().isoformat()
    }


def save_results(results: Dict[str, Any], filepath: Path):
    """Save results to JSON file"""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    def convert_to_serializable(obj):
        if hasattr(obj, '__dataclass_fields__'):
            return convert_to_serializable(asdict(obj))
        elif isinstance(obj, dict):
            return {str(k): convert_to_serializable(v) for k, v in obj.items()}
        elif isinstance(obj, (list, tuple, set, frozenset)):
            return [convert_to_serializable(item) for item in obj]
        elif isinstance(obj, (np.integer, np.floating)):
            return obj.item()
        elif isinstance(obj, bytes):
            return obj.hex()
        elif isinstance(obj, Path):
            return str(obj)
        elif isinstance(obj, Exception):
            return str(obj)
        elif hasattr(obj, 'name') and hasattr(obj, 'value'):  # Enum members
            return obj.name
        return obj

    enhanced_results = {
        'metadata': {
            'generated_at': datetime.now().isoformat(),
            'system_info': get_system_info(),
            'file_path': str(filepath)
        },
        'data': convert_to_serializable(results)
    }

    with open(filepath, 'w') as f:
        json.dump(enhanced_results, f, indent=2, default=str)

    logger.info(f"Results saved to {filepath}")


def format_duration(seconds: float) -> str:
    """Render a duration for the result reports, e.g. 250.0ms, 4.20s or 1h 2m 3.0s"""
    if seconds < 1:
        return f"{seconds * 1000:.1f}ms"
    if seconds < 60:
        return f"{seconds:.2f}s"
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(int(minutes), 60)
    if hours:
        return f"{hours}h {minutes}m {secs:.1f}s"
    return f"{minutes}m {secs:.1f}s"


__all__ = [
    'AuditRecord',
    'AuditLog',
    'AuditEntry',
    'setup_logging',
    'get_system_info',
    'save_results',
    'format_duration',
]
