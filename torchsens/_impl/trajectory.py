import bisect
from .errors import ConfigurationError
from .interp import _interp_evaluate


class _DenseOutput(object):
    """Piecewise polynomial interpolant over the accepted steps of one solve.

    Segments are recorded in the solver's time, which is negated for solves run backwards in time.
    """

    def __init__(self, segments, reversed=False):
        assert len(segments) > 0, 'dense output needs at least one step'
        self.reversed = reversed
        if reversed:
            segments = segments[::-1]
            self._starts = [-segment.t1 for segment in segments]
            self._ends = [-segment.t0 for segment in segments]
        else:
            self._starts = [segment.t0 for segment in segments]
            self._ends = [segment.t1 for segment in segments]
        self.segments = segments

    @property
    def span(self):
        return self._starts[0], self._ends[-1]

    @property
    def breakpoints(self):
        """Boundaries of the steps, ascending, in user time."""
        return self._starts + self._ends[-1:]

    def __len__(self):
        return len(self.segments)

    def __call__(self, t):
        t = float(t)
        i = bisect.bisect_right(self._starts, t) - 1
        i = min(max(i, 0), len(self.segments) - 1)
        segment = self.segments[i]
        if t == self._starts[i]:
            return segment.y1 if self.reversed else segment.y0
        if t == self._ends[i]:
            return segment.y0 if self.reversed else segment.y1
        if self.reversed:
            return _interp_evaluate(segment.coeff, segment.t0, segment.t1, -t)
        return _interp_evaluate(segment.coeff, segment.t0, segment.t1, t)


class Trajectory(object):
    """The result of a forward solve: ordered samples `(ts[i], us[i])`, optionally with dense output.

    A dense trajectory answers `traj(t)` anywhere in `[t0, tf]`. A sparse (checkpointed) one only answers at its
    sample times; anything in between has to be recomputed from a sample, see `CheckpointManager`.

    The trajectory remembers the problem and the solver settings that produced it, so that it can be extended or
    locally recomputed with the same method and tolerances.
    """

    def __init__(self, ts, us, problem, method, rtol, atol, options=None, dense_output=None):
        assert ts.ndimension() == 1 and us.shape[0] == ts.shape[0], 'ts and us must have matching lengths'
        self.ts = ts
        self.us = us
        self.problem = problem
        self.method = method
        self.rtol = rtol
        self.atol = atol
        self.options = {} if options is None else options
        self.dense_output = dense_output
        self._times = ts.tolist()

    @property
    def dense(self):
        return self.dense_output is not None

    @property
    def tspan(self):
        return self.problem.tspan

    @property
    def times(self):
        return list(self._times)

    def __len__(self):
        return len(self._times)

    def __getitem__(self, i):
        return self.us[i]

    def sample_index(self, t):
        """Index of the sample taken exactly at `t`, or None."""
        t = float(t)
        i = bisect.bisect_left(self._times, t)
        if i < len(self._times) and self._times[i] == t:
            return i
        return None

    def __call__(self, t):
        t = float(t)
        t0, tf = self.tspan
        slack = 1e-12 * max(abs(t0), abs(tf), 1.)
        if not t0 - slack <= t <= tf + slack:
            raise ConfigurationError('query time outside of the trajectory time span [{}, {}]'.format(t0, tf),
                                     time=t, component='trajectory')
        i = self.sample_index(t)
        if i is not None:
            return self.us[i]
        if self.dense_output is None:
            raise ConfigurationError('a sparse trajectory can only be queried at its sample times; enable dense '
                                     'output or use checkpointing', time=t, component='trajectory')
        return self.dense_output(t)

    def sparse(self):
        """The checkpointed variant of this trajectory: samples only, no interpolant."""
        return Trajectory(self.ts, self.us, self.problem, self.method, self.rtol, self.atol, self.options)

    def __repr__(self):
        return '{}(len={}, tspan={}, method={!r}, dense={})'.format(self.__class__.__name__, len(self), self.tspan,
                                                                      self.method, self.dense)
