"""Online/offline detection.

The monitor observes the set of active network transports, either by polling the
host's network interfaces on a timer or when the platform reports a change. Any
transport other than ``none`` counts as online; no reachability probe is made.
"""
import dataclasses
import datetime
import enum
import logging
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional

from PySide6 import QtCore, QtNetwork

POLL_INTERVAL_MS: int = 60_000
OFFLINE_THRESHOLD = datetime.timedelta(hours=24)


class TransportKind(enum.StrEnum):
    NoTransport = 'none'
    Wifi = 'wifi'
    Ethernet = 'ethernet'
    Mobile = 'mobile'
    Bluetooth = 'bluetooth'
    Vpn = 'vpn'
    Other = 'other'


class NetworkStatus(enum.StrEnum):
    Connected = 'connected'
    Disconnected = 'disconnected'
    Unknown = 'unknown'


OFFLINE = frozenset({TransportKind.NoTransport})


@dataclasses.dataclass(frozen=True)
class ConnectivityState:
    """A snapshot of the observed network state.

    Attributes:
        is_online: True if any transport other than ``none`` is present.
        transports: The observed transport kinds.
        last_changed_at: When the online flag or transport set last changed.
        last_checked_at: When the state was last observed.
        status: Connected, disconnected, or unknown before the first observation.
    """
    is_online: bool
    transports: FrozenSet[TransportKind]
    last_changed_at: datetime.datetime
    last_checked_at: datetime.datetime
    status: NetworkStatus


def _interface_kind(iface: QtNetwork.QNetworkInterface) -> TransportKind:
    t = iface.type()
    types = QtNetwork.QNetworkInterface.InterfaceType
    if t == types.Wifi:
        return TransportKind.Wifi
    if t == types.Ethernet:
        return TransportKind.Ethernet
    if t in (types.Ppp, types.Phonet, types.Ieee80216):
        return TransportKind.Mobile
    if t == types.Virtual:
        return TransportKind.Vpn
    return TransportKind.Other


def as_transport_kind(value: Any) -> TransportKind:
    """Map a transport kind or its string value. Unrecognised values map to ``other``."""
    try:
        return TransportKind(value)
    except ValueError:
        logging.debug(f'Unrecognised transport {value!r}, treating as other')
        return TransportKind.Other


def probe_interfaces() -> FrozenSet[TransportKind]:
    """Return the transport kinds of interfaces that are up, running and not loopback."""
    flags = QtNetwork.QNetworkInterface.InterfaceFlag
    kinds = set()
    for iface in QtNetwork.QNetworkInterface.allInterfaces():
        iface_flags = iface.flags()
        if not (iface_flags & flags.IsUp) or not (iface_flags & flags.IsRunning):
            continue
        if iface_flags & flags.IsLoopBack:
            continue
        kinds.add(_interface_kind(iface))
    return frozenset(kinds) or OFFLINE


class ConnectivityMonitor(QtCore.QObject):
    """Tracks whether the device is online.

    Signals:
        connectivityChanged (ConnectivityState): Emitted when the online flag or transport set changes.
        wentOnline (): Emitted on a transition to online.
        wentOffline (): Emitted on a transition to offline.

    Args:
        poll_interval_ms: Interval of the polling timer.
        offline_threshold: How long being offline counts as "too long".
        probe: Callable returning the current transport kinds. Defaults to :func:`probe_interfaces`.
        use_platform_events: Also listen to QNetworkInformation change notifications.
        clock: Callable returning the current time.
    """
    connectivityChanged = QtCore.Signal(object)
    wentOnline = QtCore.Signal()
    wentOffline = QtCore.Signal()

    def __init__(self, poll_interval_ms: int = POLL_INTERVAL_MS,
                 offline_threshold: datetime.timedelta = OFFLINE_THRESHOLD,
                 probe: Optional[Callable[[], Iterable[Any]]] = None,
                 use_platform_events: bool = True,
                 clock: Optional[Callable[[], datetime.datetime]] = None,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self.offline_threshold = offline_threshold
        self.use_platform_events = use_platform_events
        self._probe = probe or probe_interfaces
        self._clock = clock or datetime.datetime.now
        self._initialized = False
        self._network_information: Optional[QtNetwork.QNetworkInformation] = None

        t = self._clock()
        self._state = ConnectivityState(
            is_online=False,
            transports=OFFLINE,
            last_changed_at=t,
            last_checked_at=t,
            status=NetworkStatus.Unknown,
        )

        self._poll_timer = QtCore.QTimer(self)
        self._poll_timer.setInterval(poll_interval_ms)
        self._poll_timer.timeout.connect(self.check_connectivity)

    @property
    def is_online(self) -> bool:
        return self._state.is_online

    @property
    def current_state(self) -> ConnectivityState:
        return self._state

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Subscribe to platform notifications, run a first check and start polling."""
        if self._initialized:
            return
        if self.use_platform_events:
            self._connect_platform_events()
        self.check_connectivity()
        self._poll_timer.start()
        self._initialized = True
        logging.debug(f'Connectivity monitor initialized, online={self.is_online}')

    def _connect_platform_events(self) -> None:
        if not QtNetwork.QNetworkInformation.loadDefaultBackend():
            logging.debug('No network information backend available, relying on polling.')
            return
        info = QtNetwork.QNetworkInformation.instance()
        if info is None:
            return
        info.reachabilityChanged.connect(self.check_connectivity)
        info.transportMediumChanged.connect(self.check_connectivity)
        self._network_information = info
        logging.debug(f'Listening to network changes from the "{info.backendName()}" backend.')

    def check_connectivity(self, *args) -> ConnectivityState:
        """Probe the transports now and update the state.

        Also used as the slot for platform notifications, whose arguments are ignored.
        A failing probe counts as offline.
        """
        try:
            kinds = frozenset(self._probe())
        except Exception as ex:
            logging.warning(f'Connectivity probe failed, treating as offline: {ex}')
            kinds = OFFLINE
        return self.update_state(kinds)

    def update_state(self, kinds: Iterable[Any]) -> ConnectivityState:
        """Record an observed transport set and emit change signals.

        Args:
            kinds: Transport kinds or their string values. An empty set counts as ``{none}``.
        """
        kinds = frozenset(as_transport_kind(k) for k in kinds) or OFFLINE
        is_online = any(k != TransportKind.NoTransport for k in kinds)

        previous = self._state
        t = self._clock()
        changed = (
                previous.status == NetworkStatus.Unknown or
                is_online != previous.is_online or
                kinds != previous.transports
        )

        self._state = ConnectivityState(
            is_online=is_online,
            transports=kinds,
            last_changed_at=t if changed else previous.last_changed_at,
            last_checked_at=t,
            status=NetworkStatus.Connected if is_online else NetworkStatus.Disconnected,
        )

        if not changed:
            return self._state

        logging.info(f'Connectivity changed: online={is_online}, transports={sorted(kinds)}')
        self.connectivityChanged.emit(self._state)
        if is_online and not previous.is_online:
            self.wentOnline.emit()
        elif not is_online and (previous.is_online or previous.status == NetworkStatus.Unknown):
            self.wentOffline.emit()
        return self._state

    def wait_for_connection(self, timeout_ms: Optional[int] = None) -> None:
        """Block in a local event loop until the monitor reports online.

        Raises:
            TimeoutError: If still offline after ``timeout_ms``.
        """
        if self.is_online:
            return

        loop = QtCore.QEventLoop()
        timed_out = []

        def on_timeout():
            timed_out.append(True)
            loop.quit()

        timer = QtCore.QTimer()
        timer.setSingleShot(True)
        timer.timeout.connect(on_timeout)
        self.wentOnline.connect(loop.quit)
        try:
            if timeout_ms is not None:
                timer.start(timeout_ms)
            loop.exec()
        finally:
            timer.stop()
            self.wentOnline.disconnect(loop.quit)

        if timed_out and not self.is_online:
            raise TimeoutError(f'Connection timeout after {timeout_ms} ms')

    def has_been_offline_too_long(self) -> bool:
        if self._state.is_online:
            return False
        return self._clock() - self._state.last_changed_at > self.offline_threshold

    def get_connectivity_stats(self) -> Dict[str, Any]:
        return {
            'current_status': self._state.status.value,
            'is_online': self._state.is_online,
            'connections': sorted(k.value for k in self._state.transports),
            'last_changed': self._state.last_changed_at.isoformat(),
            'last_checked': self._state.last_checked_at.isoformat(),
            'has_been_offline_too_long': self.has_been_offline_too_long(),
        }

    def dispose(self) -> None:
        self._poll_timer.stop()
        if self._network_information is not None:
            try:
                self._network_information.reachabilityChanged.disconnect(self.check_connectivity)
                self._network_information.transportMediumChanged.disconnect(self.check_connectivity)
            except (RuntimeError, TypeError) as ex:
                logging.debug(f'Failed disconnecting network information signals: {ex}')
            self._network_information = None
        self._initialized = False
