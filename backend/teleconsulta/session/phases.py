from enum import Enum


class ConnectionPhase(str, Enum):
    idle = 'idle'
    initializing = 'initializing'
    waiting = 'waiting'
    connecting = 'connecting'
    connected = 'connected'
    reconnecting = 'reconnecting'
    error = 'error'
    ended = 'ended'

    @property
    def is_terminal(self) -> bool:
        return self in (ConnectionPhase.error, ConnectionPhase.ended)


class CallRole(str, Enum):
    creator = 'creator'
    joiner = 'joiner'


# error and ended are reachable from any non-terminal phase and are not listed
TRANSITIONS = {
    ConnectionPhase.idle: {ConnectionPhase.initializing},
    ConnectionPhase.initializing: {ConnectionPhase.waiting, ConnectionPhase.connecting},
    ConnectionPhase.waiting: {ConnectionPhase.connecting},
    ConnectionPhase.connecting: {ConnectionPhase.connected},
    ConnectionPhase.connected: {ConnectionPhase.reconnecting},
    ConnectionPhase.reconnecting: {ConnectionPhase.connected},
    ConnectionPhase.error: set(),
    ConnectionPhase.ended: set(),
}


def can_transition(current: ConnectionPhase, target: ConnectionPhase) -> bool:
    if current.is_terminal:
        return False
    if target.is_terminal:
        return True
    return target in TRANSITIONS[current]
