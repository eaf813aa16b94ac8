import bisect
import collections
import logging
import torch
from .errors import ConfigurationError, NumericalDivergenceError
from .odeint import odeint_dense

logger = logging.getLogger(__name__)

CheckpointPolicy = collections.namedtuple('CheckpointPolicy', 'enabled, times')
CheckpointPolicy.__new__.__defaults__ = (False, 'auto')
CheckpointPolicy.__doc__ = """Whether the backward sweep reads the forward state from a dense interpolant (`enabled=False`)
or recomputes it from checkpoints (`enabled=True`). `times` is a sequence of checkpoint times, or 'auto' (or
empty) for the trajectory's own sample times."""


class CheckpointManager(object):
    """Answers "what was the forward state at time t?" during a backward sweep.

    Without checkpointing the query is answered by the trajectory's dense interpolant. With checkpointing, only the
    states at the checkpoint times are kept; a query between two checkpoints re-integrates that bracket with the
    trajectory's own method and tolerances, and the resulting local interpolant is cached. Only the two most recently
    used brackets are kept, which is enough for a sweep that moves monotonically through the brackets.
    """

    max_cached_brackets = 2

    def __init__(self, trajectory, checkpoint_times='auto', enabled=False, options=None):
        self.trajectory = trajectory
        self.enabled = enabled
        self.options = trajectory.options if options is None else options
        self.reintegrations = 0
        self._cache = collections.OrderedDict()

        if not enabled:
            if not trajectory.dense:
                raise ConfigurationError('interpolating the forward solution needs a dense trajectory; solve with '
                                         'dense=True or enable checkpointing', component='checkpointing')
            self.times = None
            self.states = None
            return

        self.times = self._checkpoint_times(checkpoint_times)
        with torch.no_grad():
            self.states = [self._initial_state(t).detach() for t in self.times]

    def _checkpoint_times(self, checkpoint_times):
        t0, tf = self.trajectory.tspan
        if checkpoint_times is None or (isinstance(checkpoint_times, str) and checkpoint_times == 'auto'):
            times = self.trajectory.times
        elif isinstance(checkpoint_times, str):
            raise ConfigurationError("checkpoint times must be a sequence of times or 'auto', got {!r}"
                                     .format(checkpoint_times), component='checkpointing')
        else:
            if torch.is_tensor(checkpoint_times):
                checkpoint_times = checkpoint_times.tolist()
            times = [float(t) for t in checkpoint_times]
            if len(times) == 0:
                times = self.trajectory.times

        for t in times:
            if not t0 <= t <= tf:
                raise ConfigurationError('checkpoint time outside of the time span [{}, {}]'.format(t0, tf), time=t,
                                         component='checkpointing')
        for a, b in zip(times[:-1], times[1:]):
            if not a < b:
                raise ConfigurationError('checkpoint times must be sorted in strictly ascending order', time=b,
                                         component='checkpointing')

        # Checkpoints must bracket every query in [t0, tf].
        if times[0] != t0:
            times = [t0] + times
        if times[-1] != tf:
            times = times + [tf]
        return times

    def _initial_state(self, t):
        trajectory = self.trajectory
        i = trajectory.sample_index(t)
        if i is not None:
            return trajectory.us[i]
        if trajectory.dense:
            return trajectory(t)
        # Recompute from the last sample before t.
        times = trajectory.times
        k = bisect.bisect_right(times, t) - 1
        solution, _ = self._integrate(trajectory.us[k].detach(), times[k], t)
        return solution[-1]

    def _integrate(self, y0, a, b):
        trajectory = self.trajectory
        func = trajectory.problem.remake(p=trajectory.problem.p.detach()).rhs()
        t = torch.tensor([a, b], dtype=y0.dtype, device=y0.device)
        try:
            with torch.no_grad():
                return odeint_dense(func, y0, t, rtol=trajectory.rtol, atol=trajectory.atol,
                                    method=trajectory.method, options=self.options)
        except NumericalDivergenceError as e:
            raise NumericalDivergenceError('re-integration from checkpoint diverged', time=e.time, bracket=(a, b),
                                           component='checkpointing', tolerance=e.tolerance) from e

    @property
    def points(self):
        """Boundaries at which a backward sweep should stop, ascending."""
        if self.enabled:
            return list(self.times)
        return list(self.trajectory.tspan)

    def _bracket(self, t):
        for k in reversed(self._cache):
            if self.times[k] <= t <= self.times[k + 1]:
                return k
        k = bisect.bisect_right(self.times, t) - 1
        return min(max(k, 0), len(self.times) - 2)

    def _local_solution(self, k):
        try:
            local = self._cache[k]
        except KeyError:
            a, b = self.times[k], self.times[k + 1]
            logger.debug('re-integrating checkpoint bracket [%s, %s]', a, b)
            _, local = self._integrate(self.states[k], a, b)
            self.reintegrations += 1
            self._cache[k] = local
            while len(self._cache) > self.max_cached_brackets:
                evicted, _ = self._cache.popitem(last=False)
                logger.debug('evicting checkpoint bracket [%s, %s]', self.times[evicted], self.times[evicted + 1])
        else:
            self._cache.move_to_end(k)
        return local

    def state_at_checkpoint(self, t):
        """The stored state at checkpoint time `t`, or None if `t` is not a checkpoint."""
        if not self.enabled:
            return None
        i = bisect.bisect_left(self.times, t)
        if i < len(self.times) and self.times[i] == t:
            return self.states[i]
        return None

    def __call__(self, t):
        t = float(t)
        if not self.enabled:
            return self.trajectory(t).detach()
        state = self.state_at_checkpoint(t)
        if state is not None:
            return state
        t0, tf = self.trajectory.tspan
        slack = 1e-12 * max(abs(t0), abs(tf), 1.)
        if not t0 - slack <= t <= tf + slack:
            raise ConfigurationError('query time outside of the trajectory time span [{}, {}]'.format(t0, tf),
                                     time=t, component='checkpointing')
        return self._local_solution(self._bracket(t))(t)

    def clear(self):
        self._cache.clear()
