"""
Learn rate schedules, applied once per epoch
"""


class NullSchedule:
    """Keep the learn rate constant"""

    def update(self, learn_rate: float, epoch: int) -> float:
        return learn_rate


class PiecewiseSchedule:
    """
    Multiply the learn rate by drop_factor every drop_period epochs

    Args:
        drop_factor: Factor in [0, 1]
        drop_period: Number of epochs between drops
    """

    def __init__(self, drop_factor: float = 0.1, drop_period: int = 10):
        if not 0 <= drop_factor <= 1:
            raise ValueError("drop_factor must be in [0, 1]")
        if int(drop_period) < 1:
            raise ValueError("drop_period must be a positive integer")
        self.drop_factor = float(drop_factor)
        self.drop_period = int(drop_period)

    def update(self, learn_rate: float, epoch: int) -> float:
        if epoch % self.drop_period == 0:
            return self.drop_factor * learn_rate
        return learn_rate


def create_schedule(options):
    if options.learn_rate_schedule == 'piecewise':
        return PiecewiseSchedule(options.learn_rate_drop_factor, options.learn_rate_drop_period)
    return NullSchedule()
