class SensitivityError(Exception):
    """Base class for errors raised by torchsens.

    Every error carries whatever context was available where it was raised, so that the caller can decide on a
    remediation (tighter tolerances, a different method, checkpointed interpolation instead of backsolve...).
    """

    def __init__(self, message, *, time=None, bracket=None, component=None, tolerance=None):
        super(SensitivityError, self).__init__(message)
        self.time = time
        self.bracket = bracket
        self.component = component
        self.tolerance = tolerance

    def __str__(self):
        message = super(SensitivityError, self).__str__()
        context = []
        if self.component is not None:
            context.append('component={}'.format(self.component))
        if self.time is not None:
            context.append('t={}'.format(self.time))
        if self.bracket is not None:
            context.append('bracket=[{}, {}]'.format(*self.bracket))
        if self.tolerance is not None:
            context.append('tolerance={}'.format(self.tolerance))
        if context:
            message = '{} ({})'.format(message, ', '.join(context))
        return message


class ConfigurationError(SensitivityError, ValueError):
    """Invalid or mutually exclusive configuration. Never worth retrying."""


class NumericalDivergenceError(SensitivityError, RuntimeError):
    """Non-finite state or step size collapse during integration."""


class UnsupportedCombinationError(SensitivityError):
    """A requested combination is unsupported or detectably unstable. Raised in strict mode only."""


class IntegrationCancelled(SensitivityError):
    """The integration was cancelled at a step boundary."""


class StabilityWarning(UserWarning):
    pass
