class ForwardException(Exception):
    pass


class ForwardValueError(ValueError, ForwardException):
    pass


class ForwardRuntimeError(RuntimeError, ForwardException):
    pass


class ForwardTypeError(TypeError, ForwardException):
    pass


class TargetUnreachable(ForwardRuntimeError):
    pass


class NotPairedError(ForwardRuntimeError):
    "an endpoint was used without a registered peer, the pairing invariant is broken"

    pass


class PairingError(ForwardRuntimeError):
    pass


class FatalIOError(ForwardRuntimeError):
    "the readiness mechanism itself failed"

    pass
