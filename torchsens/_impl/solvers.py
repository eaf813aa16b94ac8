import abc
import collections
import torch
from .errors import ConfigurationError, IntegrationCancelled, NumericalDivergenceError
from .interp import _hermite_fit, _interp_evaluate
from .misc import _handle_unused_kwargs


_Segment = collections.namedtuple('_Segment', 't0, t1, y0, y1, coeff')
# One accepted step of a solve, in the solver's own (possibly negated) time.
#
# Attributes:
#     t0, t1: floats giving the start and end of the step.
#     y0, y1: Tensors giving the state at either end of the step.
#     coeff: list of Tensors giving coefficients for polynomial
#         interpolation between `t0` and `t1`.


class _BaseODESolver(metaclass=abc.ABCMeta):

    def __init__(self, func, y0, rtol, atol, is_reversed=False, cancel_event=None, **unused_kwargs):
        _handle_unused_kwargs(self, unused_kwargs)
        del unused_kwargs

        self.func = func
        self.y0 = y0
        self.dtype = y0.dtype
        self.device = y0.device
        self.rtol = rtol
        self.atol = atol
        self.is_reversed = is_reversed
        self.cancel_event = cancel_event
        self.segments = None

    def _user_time(self, t):
        t = float(t)
        return -t if self.is_reversed else t

    def _check_cancelled(self, t):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise IntegrationCancelled('integration cancelled', time=self._user_time(t), component='solver')

    def _record(self, t0, t1, y0, y1, coeff):
        if self.segments is not None:
            self.segments.append(_Segment(float(t0), float(t1), y0, y1, coeff))

    @abc.abstractmethod
    def integrate(self, t, record=False):
        raise NotImplementedError


class AdaptiveStepsizeODESolver(_BaseODESolver, metaclass=abc.ABCMeta):

    def _before_integrate(self, t):
        pass

    @abc.abstractmethod
    def _advance(self, next_t):
        raise NotImplementedError

    def integrate(self, t, record=False):
        self.segments = [] if record else None
        solution = [self.y0]
        self._before_integrate(t)
        for i in range(1, len(t)):
            solution.append(self._advance(t[i]))
        return torch.stack(solution)


class FixedGridODESolver(_BaseODESolver, metaclass=abc.ABCMeta):
    order: int

    def __init__(self, func, y0, rtol, atol, step_size=None, grid_constructor=None, interp="cubic", **kwargs):
        super(FixedGridODESolver, self).__init__(func=func, y0=y0, rtol=rtol, atol=atol, **kwargs)
        self.step_size = step_size
        self.interp = interp

        if step_size is None:
            if grid_constructor is None:
                self.grid_constructor = lambda f, y0, t: t
            else:
                self.grid_constructor = grid_constructor
        else:
            if grid_constructor is None:
                self.grid_constructor = self._grid_constructor_from_step_size(step_size)
            else:
                raise ConfigurationError("step_size and grid_constructor are mutually exclusive arguments.")

    @staticmethod
    def _grid_constructor_from_step_size(step_size):
        def _grid_constructor(func, y0, t):
            start_time = t[0]
            end_time = t[-1]

            niters = torch.ceil((end_time - start_time) / step_size + 1).item()
            t_infer = torch.arange(0, niters, dtype=t.dtype, device=t.device) * step_size + start_time
            t_infer[-1] = t[-1]

            return t_infer
        return _grid_constructor

    @abc.abstractmethod
    def _step_func(self, func, t0, dt, t1, y0):
        pass

    def integrate(self, t, record=False):
        self.segments = [] if record else None
        time_grid = self.grid_constructor(self.func, self.y0, t)
        assert time_grid[0] == t[0] and time_grid[-1] == t[-1]

        solution = [self.y0]

        j = 1
        y0 = self.y0
        for t0, t1 in zip(time_grid[:-1], time_grid[1:]):
            self._check_cancelled(t0)
            dt = t1 - t0
            dy, f0 = self._step_func(self.func, t0, dt, t1, y0)
            y1 = y0 + dy
            if not torch.isfinite(y1).all():
                raise NumericalDivergenceError('non-finite values in state `y`', time=self._user_time(t1),
                                               component='solver')

            if record or self.interp == "cubic":
                f1 = self.func(t1, y1)
                coeff = _hermite_fit(y0, y1, f0, f1, dt)
                self._record(t0, t1, y0, y1, coeff)

            while j < len(t) and t1 >= t[j]:
                if t[j] == t1:
                    solution.append(y1)
                elif self.interp == "linear":
                    solution.append(self._linear_interp(t0, t1, y0, y1, t[j]))
                elif self.interp == "cubic":
                    solution.append(_interp_evaluate(coeff, t0, t1, t[j]))
                else:
                    raise ConfigurationError(f"Unknown interpolation method {self.interp}")
                j += 1
            y0 = y1

        return torch.stack(solution)

    def _linear_interp(self, t0, t1, y0, y1, t):
        if t == t0:
            return y0
        if t == t1:
            return y1
        slope = (t - t0) / (t1 - t0)
        return y0 + slope * (y1 - y0)
