# Payment lifecycle states

# No session in flight; a new initiation may start
IDLE = "Idle"

# Payload frozen, gateway call (or open widget) outstanding
INITIATING = "Initiating"

# Pending record persisted, control handed to the hosted gateway page
AWAITING_GATEWAY_REDIRECT = "AwaitingGatewayRedirect"

# Charge requested; waiting for the remote service to report completion
AWAITING_CONFIRMATION = "AwaitingConfirmation"

# Terminal states: durable record cleared on entry
CONFIRMED = "Confirmed"
FAILED = "Failed"
TIMED_OUT = "TimedOut"
CANCELLED = "Cancelled"

TERMINAL_STATES = frozenset({CONFIRMED, FAILED, TIMED_OUT, CANCELLED})

# Cancellation is legal from every non-terminal state
TRANSITIONS = {
    IDLE: {INITIATING},
    INITIATING: {AWAITING_GATEWAY_REDIRECT, AWAITING_CONFIRMATION, CONFIRMED, FAILED, TIMED_OUT, CANCELLED},
    AWAITING_GATEWAY_REDIRECT: {AWAITING_CONFIRMATION, CONFIRMED, FAILED, CANCELLED},
    AWAITING_CONFIRMATION: {CONFIRMED, FAILED, TIMED_OUT, CANCELLED},
    CONFIRMED: set(),
    FAILED: set(),
    TIMED_OUT: set(),
    CANCELLED: set(),
}


def is_terminal(state: str) -> bool:
    return state in TERMINAL_STATES


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())
