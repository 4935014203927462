"""Error reporting with history, statistics and burst collapsing.

Every reported error is logged, kept in a bounded history and emitted on
:attr:`ErrorHandlingService.errorReported`. When the same error signature
(type and message) recurs more than ``burst_threshold`` times within
``burst_window``, the repeats are collapsed into a single synthetic
"Error burst detected" event and the rest of the burst is dropped.
"""
import collections
import dataclasses
import datetime
import enum
import logging
import pathlib
import traceback
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from PySide6 import QtCore

from . import status
from ..log import log

BURST_WINDOW = datetime.timedelta(seconds=10)
BURST_THRESHOLD: int = 5
MAX_HISTORY: int = 100


class ErrorType(enum.StrEnum):
    Network = 'network'
    Remote = 'remote'
    Authentication = 'authentication'
    Validation = 'validation'
    Business = 'business'
    Cache = 'cache'
    System = 'system'
    Unhandled = 'unhandled'


class ErrorSeverity(enum.IntEnum):
    Low = 0
    Medium = 1
    High = 2
    Critical = 3


SEVERITY_LOG_LEVEL: Dict[ErrorSeverity, int] = {
    ErrorSeverity.Low: logging.INFO,
    ErrorSeverity.Medium: logging.WARNING,
    ErrorSeverity.High: logging.ERROR,
    ErrorSeverity.Critical: logging.CRITICAL,
}


@dataclasses.dataclass
class AppError:
    type: ErrorType
    message: str
    timestamp: datetime.datetime
    severity: ErrorSeverity = ErrorSeverity.Medium
    context: Optional[str] = None
    stack_trace: Optional[str] = None
    metadata: Dict[str, Any] = dataclasses.field(default_factory=dict)

    @property
    def signature(self) -> str:
        return f'{self.type.value}_{self.message}'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'message': self.message,
            'timestamp': self.timestamp.isoformat(),
            'severity': self.severity.name.lower(),
            'context': self.context,
            'stackTrace': self.stack_trace,
            'metadata': self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AppError':
        return cls(
            type=ErrorType(data['type']),
            message=data['message'],
            timestamp=datetime.datetime.fromisoformat(data['timestamp']),
            severity=ErrorSeverity[data.get('severity', 'medium').title()],
            context=data.get('context'),
            stack_trace=data.get('stackTrace'),
            metadata=data.get('metadata') or {},
        )


class ErrorHandlingService(QtCore.QObject):
    """Collects application errors.

    Signals:
        errorReported (AppError): Emitted for every recorded error and burst event.

    Args:
        burst_window: Window in which repeats of one signature are counted.
        burst_threshold: Repeats allowed in the window before they are collapsed.
        max_history: Number of errors kept in the history.
        clock: Callable returning the current time.
    """
    errorReported = QtCore.Signal(object)

    def __init__(self, burst_window: datetime.timedelta = BURST_WINDOW,
                 burst_threshold: int = BURST_THRESHOLD,
                 max_history: int = MAX_HISTORY,
                 clock: Optional[Callable[[], datetime.datetime]] = None,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self.burst_window = burst_window
        self.burst_threshold = burst_threshold
        self._clock = clock or datetime.datetime.now

        self._history: Deque[AppError] = collections.deque(maxlen=max_history)
        self._recent: Dict[str, Deque[datetime.datetime]] = {}
        self._bursting: set = set()

    @property
    def history(self) -> List[AppError]:
        return list(self._history)

    def report(self, error_type: ErrorType, message: str,
               severity: ErrorSeverity = ErrorSeverity.Medium,
               context: Optional[str] = None,
               metadata: Optional[Dict[str, Any]] = None,
               stack_trace: Optional[str] = None) -> Optional[AppError]:
        """Record an error.

        Returns:
            The recorded error, the synthetic burst error, or None if the error was
            suppressed as part of an ongoing burst.
        """
        error = AppError(
            type=error_type,
            message=message,
            timestamp=self._clock(),
            severity=severity,
            context=context,
            stack_trace=stack_trace,
            metadata=metadata or {},
        )
        return self._process_error(error)

    def _process_error(self, error: AppError) -> Optional[AppError]:
        key = error.signature
        self._prune(error.timestamp)

        recent = self._recent.setdefault(key, collections.deque())
        while recent and error.timestamp - recent[0] > self.burst_window:
            recent.popleft()
        recent.append(error.timestamp)

        if len(recent) <= self.burst_threshold:
            self._bursting.discard(key)
            self._record(error)
            return error

        if key in self._bursting:
            logging.debug(f'Suppressed repeated error: {error.message}')
            return None

        self._bursting.add(key)
        burst = AppError(
            type=ErrorType.System,
            message=f'Error burst detected: {error.message}',
            timestamp=error.timestamp,
            severity=ErrorSeverity.Critical,
            metadata={
                'originalError': error.to_dict(),
                'burstCount': len(recent),
            },
        )
        self._record(burst)
        return burst

    def _prune(self, t: datetime.datetime) -> None:
        """Forget signatures that have not recurred within the burst window."""
        stale = [k for k, v in self._recent.items() if not v or t - v[-1] > self.burst_window]
        for key in stale:
            del self._recent[key]
            self._bursting.discard(key)

    def _record(self, error: AppError) -> None:
        self._history.append(error)
        level = SEVERITY_LOG_LEVEL[error.severity]
        message = f'[{error.type.value}] {error.message}'
        if error.context:
            message = f'{message} ({error.context})'
        logging.log(level, message)
        self.errorReported.emit(error)

    def handle_business_error(self, message: str, context: Optional[str] = None,
                              metadata: Optional[Dict[str, Any]] = None,
                              severity: ErrorSeverity = ErrorSeverity.Medium) -> Optional[AppError]:
        return self.report(ErrorType.Business, message, severity=severity, context=context, metadata=metadata)

    def handle_network_error(self, message: str, endpoint: Optional[str] = None,
                             status_code: Optional[int] = None,
                             request_data: Optional[Dict[str, Any]] = None) -> Optional[AppError]:
        return self.report(ErrorType.Network, message, metadata={
            'endpoint': endpoint,
            'statusCode': status_code,
            'requestData': request_data,
        })

    def handle_remote_error(self, message: str, operation: Optional[str] = None,
                            collection: Optional[str] = None) -> Optional[AppError]:
        return self.report(ErrorType.Remote, message, metadata={
            'operation': operation,
            'collection': collection,
        })

    def handle_auth_error(self, message: str, auth_method: Optional[str] = None) -> Optional[AppError]:
        return self.report(
            ErrorType.Authentication, message,
            severity=ErrorSeverity.High,
            metadata={'authMethod': auth_method},
        )

    def handle_validation_error(self, message: str, field: Optional[str] = None,
                                value: Any = None) -> Optional[AppError]:
        return self.report(
            ErrorType.Validation, message,
            severity=ErrorSeverity.Low,
            metadata={'field': field, 'value': None if value is None else str(value)},
        )

    def handle_cache_error(self, message: str, store: Optional[str] = None) -> Optional[AppError]:
        return self.report(ErrorType.Cache, message, severity=ErrorSeverity.High, metadata={'store': store})

    def handle_unhandled_error(self, message: str, context: Optional[str] = None,
                               stack_trace: Optional[str] = None) -> Optional[AppError]:
        return self.report(
            ErrorType.Unhandled, message,
            severity=ErrorSeverity.High,
            context=context,
            stack_trace=stack_trace,
        )

    def handle_exception(self, ex: BaseException, context: Optional[str] = None) -> Optional[AppError]:
        """Record an exception, deriving the error type from its class."""
        stack = ''.join(traceback.format_exception(ex)) if ex.__traceback__ else None

        if isinstance(ex, status.ValidationException):
            error_type, severity = ErrorType.Validation, ErrorSeverity.Low
        elif isinstance(ex, status.RemoteStoreException):
            error_type, severity = ErrorType.Remote, ErrorSeverity.Medium
        elif isinstance(ex, (status.CredsNotFoundException, status.CredsInvalidException,
                             status.AuthenticationException)):
            error_type, severity = ErrorType.Authentication, ErrorSeverity.High
        elif isinstance(ex, status.CacheInvalidException):
            error_type, severity = ErrorType.Cache, ErrorSeverity.High
        elif isinstance(ex, status.BaseStatusException):
            error_type, severity = ErrorType.Business, ErrorSeverity.Medium
        elif isinstance(ex, (ConnectionError, TimeoutError)):
            error_type, severity = ErrorType.Network, ErrorSeverity.Medium
        else:
            return self.handle_unhandled_error(str(ex), context=context, stack_trace=stack)

        return self.report(error_type, str(ex), severity=severity, context=context, stack_trace=stack)

    def get_error_statistics(self) -> Dict[str, Any]:
        t = self._clock()
        last_24h = [e for e in self._history if e.timestamp > t - datetime.timedelta(hours=24)]
        last_7d = [e for e in self._history if e.timestamp > t - datetime.timedelta(days=7)]

        most_common = collections.Counter(f'{e.type.value}: {e.message}' for e in self._history)
        return {
            'totalErrors': len(self._history),
            'errorsLast24h': len(last_24h),
            'errorsLast7d': len(last_7d),
            'errorsByType': dict(collections.Counter(e.type.value for e in self._history)),
            'errorsByTypeLast24h': dict(collections.Counter(e.type.value for e in last_24h)),
            'errorsBySeverity': dict(collections.Counter(e.severity.name.lower() for e in self._history)),
            'mostCommonErrors': [{'error': k, 'count': v} for k, v in most_common.most_common(5)],
            'errorRate24h': len(last_24h) / 24,
        }

    def get_errors_by_type(self, error_type: ErrorType) -> List[AppError]:
        return [e for e in self._history if e.type == error_type]

    def get_errors_by_severity(self, severity: ErrorSeverity) -> List[AppError]:
        return [e for e in self._history if e.severity == severity]

    def clear_error_history(self) -> None:
        self._history.clear()
        self._recent.clear()
        self._bursting.clear()

    def export_error_log(self, path: Optional[Union[str, pathlib.Path]] = None,
                         include_logs: int = 0) -> str:
        """Render the history as plain text, optionally writing it to ``path``.

        Args:
            path: File to write the log to.
            include_logs: Also append up to this many recent warning and error
                records from the log tank.
        """
        lines = [
            '=== FINLYTIC ERROR LOG ===',
            f'Generated: {self._clock().isoformat()}',
            f'Total Errors: {len(self._history)}',
            '',
        ]
        for error in self._history:
            lines.append(f'[{error.type.value.upper()}] {error.timestamp.isoformat()}')
            lines.append(f'Type: {error.type.value}')
            lines.append(f'Severity: {error.severity.name.lower()}')
            lines.append(f'Message: {error.message}')
            if error.context:
                lines.append(f'Context: {error.context}')
            if error.metadata:
                lines.append(f'Metadata: {error.metadata}')
            if error.stack_trace:
                lines.append('Stack Trace:')
                lines.append(error.stack_trace.rstrip())
            lines.append('---')

        tank = log.get_tank_handler()
        if include_logs and tank is not None:
            records = tank.get_logs(logging.WARNING, limit=include_logs)
            lines.append('')
            lines.append(f'=== RECENT LOG ({len(records)}) ===')
            lines.extend(records)
        text = '\n'.join(lines) + '\n'

        if path is not None:
            path = pathlib.Path(path)
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open('w', encoding='utf-8') as f:
                f.write(text)
            logging.debug(f'Error log written to {path}')
        return text
