# Copyright Contributors to the Pyro project.
# SPDX-License-Identifier: Apache-2.0

"""
Containers for the observed daily series and for the future time points to
forecast. Both are immutable :func:`~collections.namedtuple` subclasses holding
read-only NumPy arrays, so a single instance can be shared by every chain.
"""

from collections import namedtuple

import numpy as np

from countcast.exceptions import ConfigurationError

__all__ = [
    "Dataset",
    "ForecastPoint",
    "ForecastPoints",
    "NUM_WEEKDAYS",
    "fourier_features",
]

NUM_WEEKDAYS = 7
DAYS_PER_YEAR = 365.25


def fourier_features(t_days, num_harmonics, period=DAYS_PER_YEAR):
    r"""
    Builds the Fourier design matrix for a seasonal cycle of length ``period``.

    The columns are interleaved sine/cosine pairs

    .. math::

        \sin(2\pi k t / P), \cos(2\pi k t / P), \quad k = 1, \dots, S.

    :param numpy.ndarray t_days: time points, in the same unit as ``period``.
    :param int num_harmonics: number of harmonics ``S``.
    :param float period: length of the seasonal cycle. Defaults to one year of days.
    :return: an array of shape ``(len(t_days), 2 * num_harmonics)``.
    :rtype: numpy.ndarray
    """
    if num_harmonics < 0:
        raise ConfigurationError("`num_harmonics` must be non-negative.")
    if period <= 0:
        raise ConfigurationError("`period` must be positive.")
    t_days = np.asarray(t_days, dtype=float)
    k = np.arange(1, num_harmonics + 1)
    angle = 2 * np.pi * t_days[:, None] * k / period
    features = np.stack([np.sin(angle), np.cos(angle)], axis=-1)
    return features.reshape(t_days.shape[0], 2 * num_harmonics)


def _iso_weekday(dates):
    # 1970-01-01 is a Thursday; shift so that Monday maps to 1
    days = dates.astype("datetime64[D]").astype(np.int64)
    return (days + 3) % NUM_WEEKDAYS + 1


def _readonly(x):
    x = np.array(x)
    x.flags.writeable = False
    return x


def _check_design(dow, t, fourier, num_categories, num_rows, name):
    dow = np.asarray(dow)
    t = np.asarray(t, dtype=float)
    fourier = np.asarray(fourier, dtype=float)
    if num_categories < 1:
        raise ConfigurationError("`num_categories` must be at least 1.")
    if dow.ndim != 1 or t.ndim != 1:
        raise ConfigurationError(
            "{}: `dow` and `t` must be 1-dimensional.".format(name)
        )
    if fourier.ndim != 2:
        raise ConfigurationError(
            "{}: `fourier` must be a 2-dimensional matrix.".format(name)
        )
    if fourier.shape[1] % 2 != 0:
        raise ConfigurationError(
            "{}: `fourier` must hold sine/cosine pairs, got {} columns.".format(
                name, fourier.shape[1]
            )
        )
    for field, value in (("dow", dow), ("t", t), ("fourier", fourier)):
        if value.shape[0] != num_rows:
            raise ConfigurationError(
                "{}: expected {} rows in `{}` but got {}.".format(
                    name, num_rows, field, value.shape[0]
                )
            )
    if num_rows > 0:
        if not np.issubdtype(dow.dtype, np.integer):
            if not (np.all(np.isfinite(dow)) and np.all(dow == np.floor(dow))):
                raise ConfigurationError(
                    "{}: day-of-week indices must be integers.".format(name)
                )
        if dow.min() < 1 or dow.max() > num_categories:
            raise ConfigurationError(
                "{}: day-of-week indices must lie in [1, {}], got [{}, {}].".format(
                    name, num_categories, dow.min(), dow.max()
                )
            )
        if not (np.all(np.isfinite(t)) and np.all(np.isfinite(fourier))):
            raise ConfigurationError(
                "{}: `t` and `fourier` must be finite.".format(name)
            )
    return dow.astype(np.int64), t, fourier


class Dataset(
    namedtuple(
        "Dataset",
        [
            "counts",
            "dow",
            "t",
            "fourier",
            "num_categories",
            "time_origin",
            "time_scale",
            "period",
        ],
    )
):
    """
    Observed daily counts with their day-of-week, scaled time and Fourier
    covariates. All arrays are validated on construction and stored read-only.

    :param counts: non-negative integer counts, shape ``(N,)``.
    :param dow: day-of-week categories in ``[1, num_categories]``, shape ``(N,)``.
        Category 1 is the baseline whose effect is fixed at zero.
    :param t: scaled time index, shape ``(N,)``.
    :param fourier: Fourier design matrix, shape ``(N, 2S)``.
    :param int num_categories: number of day-of-week categories ``K``. Defaults to 7.
    :param time_origin: calendar date of day offset 0, if the data set was built
        from a contiguous series (see :meth:`from_series`).
    :param float time_scale: number of days per unit of ``t``.
    :param float period: seasonal period, in days, used to build ``fourier``.
    :raises ConfigurationError: if any of the invariants is violated.
    """

    __slots__ = ()

    def __new__(
        cls,
        counts,
        dow,
        t,
        fourier,
        num_categories=NUM_WEEKDAYS,
        time_origin=None,
        time_scale=None,
        period=None,
    ):
        counts = np.asarray(counts)
        if counts.ndim != 1:
            raise ConfigurationError("`counts` must be 1-dimensional.")
        num_obs = counts.shape[0]
        if num_obs == 0:
            raise ConfigurationError("Dataset must contain at least one observation.")
        if not np.all(np.isfinite(counts)):
            raise ConfigurationError("`counts` must be finite.")
        if np.any(counts < 0) or np.any(counts != np.floor(counts)):
            raise ConfigurationError("`counts` must be non-negative integers.")
        dow, t, fourier = _check_design(
            dow, t, fourier, num_categories, num_obs, "Dataset"
        )
        if time_origin is not None:
            time_origin = np.datetime64(time_origin, "D")
        return super(Dataset, cls).__new__(
            cls,
            _readonly(counts.astype(np.int64)),
            _readonly(dow),
            _readonly(t),
            _readonly(fourier),
            int(num_categories),
            time_origin,
            time_scale,
            period,
        )

    @property
    def num_obs(self):
        return self.counts.shape[0]

    @property
    def num_harmonics(self):
        return self.fourier.shape[1] // 2

    @classmethod
    def from_series(
        cls,
        counts,
        start_date,
        num_harmonics=5,
        period=DAYS_PER_YEAR,
        time_scale=DAYS_PER_YEAR,
    ):
        """
        Builds a data set from a contiguous daily series starting at ``start_date``.

        Day-of-week categories follow ISO weekdays (Monday is 1, the baseline),
        ``t`` is the day offset divided by ``time_scale`` and the Fourier rows
        are computed from the day offset.

        :param counts: daily counts.
        :param start_date: date of the first observation, anything accepted by
            :class:`numpy.datetime64`.
        :param int num_harmonics: number of Fourier harmonics ``S``.
        :param float period: seasonal period in days.
        :param float time_scale: number of days per unit of the scaled time index.
        :rtype: Dataset
        """
        if time_scale <= 0:
            raise ConfigurationError("`time_scale` must be positive.")
        counts = np.asarray(counts)
        origin = np.datetime64(start_date, "D")
        days = np.arange(counts.shape[0])
        return cls(
            counts,
            _iso_weekday(origin + days),
            days / time_scale,
            fourier_features(days, num_harmonics, period),
            num_categories=NUM_WEEKDAYS,
            time_origin=origin,
            time_scale=time_scale,
            period=period,
        )

    def forecast_points(self, horizon):
        """
        Returns the ``horizon`` days that follow the last observation, encoded
        with the same origin, time scale, period and harmonics as this data set.

        :param int horizon: number of future days.
        :rtype: ForecastPoints
        """
        if self.time_origin is None:
            raise ConfigurationError(
                "Forecast points can only be derived from a data set built with"
                " `Dataset.from_series`."
            )
        if horizon < 1:
            raise ConfigurationError("`horizon` must be a positive integer.")
        last_day = int(np.rint(self.t[-1] * self.time_scale))
        days = last_day + 1 + np.arange(horizon)
        return ForecastPoints(
            _iso_weekday(self.time_origin + days),
            days / self.time_scale,
            fourier_features(days, self.num_harmonics, self.period),
            num_categories=self.num_categories,
        )


ForecastPoint = namedtuple("ForecastPoint", ["dow", "t", "fourier"])
"""
A single future time point: day-of-week category (1-based), scaled time index
and the Fourier row of length ``2S``.
"""


class ForecastPoints(namedtuple("ForecastPoints", ["dow", "t", "fourier"])):
    """
    A batch of ``H`` future time points, validated like :class:`Dataset`.

    :param dow: day-of-week categories in ``[1, num_categories]``, shape ``(H,)``.
    :param t: scaled time index, shape ``(H,)``.
    :param fourier: Fourier rows, shape ``(H, 2S)``.
    :param int num_categories: number of day-of-week categories.
    """

    __slots__ = ()

    def __new__(cls, dow, t, fourier, num_categories=NUM_WEEKDAYS):
        dow = np.atleast_1d(dow)
        t = np.atleast_1d(np.asarray(t, dtype=float))
        fourier = np.asarray(fourier, dtype=float)
        if fourier.ndim == 1:
            fourier = fourier[None, :]
        if dow.shape[0] == 0:
            raise ConfigurationError("At least one forecast point is required.")
        dow, t, fourier = _check_design(
            dow, t, fourier, num_categories, dow.shape[0], "ForecastPoints"
        )
        return super(ForecastPoints, cls).__new__(
            cls, _readonly(dow), _readonly(t), _readonly(fourier)
        )

    @classmethod
    def from_points(cls, points, num_categories=NUM_WEEKDAYS):
        """
        Stacks a sequence of :data:`ForecastPoint` into a batch.
        """
        points = list(points)
        if len(points) == 0:
            raise ConfigurationError("At least one forecast point is required.")
        return cls(
            np.array([p.dow for p in points]),
            np.array([p.t for p in points], dtype=float),
            np.stack([np.asarray(p.fourier, dtype=float) for p in points]),
            num_categories=num_categories,
        )

    @property
    def num_points(self):
        return self.t.shape[0]

    def points(self):
        """
        Returns the batch as a list of :data:`ForecastPoint`.
        """
        return [
            ForecastPoint(int(self.dow[i]), float(self.t[i]), self.fourier[i])
            for i in range(self.num_points)
        ]
