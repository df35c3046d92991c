
import numpy as np

from typing import Union
from numba import njit

from ..exceptions import InvalidInputError


class SpatialSmoother:
    """
    Majority-vote (modal) filter over a risk grid.

    Every cell takes the most frequent non-missing tier within the square window centered on it; ties go to the
    lowest tier. Windows without any valid tier yield a missing cell. The filter works on the tier raster only and
    leaves the trained model untouched.

    Attributes:
        window_size (int): Side length of the square window, positive and odd. Defaults to 3.
        no_data (int): Missing-data sentinel. Defaults to -9999.
        fill_missing (bool): If ``False`` (default), cells that are missing in the input stay missing; if ``True``
            they take the mode of their window like every other cell.
    """
    def __init__(
            self,
            window_size: int = 3,
            no_data: int = -9999,
            fill_missing: bool = False,
    ):
        SpatialSmoother._check_window_size(window_size)
        self.window_size = window_size
        self.no_data = no_data
        self.fill_missing = fill_missing

    def smooth(self, risk_grid: np.ndarray, window_size: Union[int, None] = None) -> np.ndarray:
        """
        Apply the majority filter.

        Args:
            risk_grid (np.ndarray): 2-D integer tier grid, missing cells set to ``no_data``.
            window_size (int or None): Overrides the instance window size for this call.

        Returns:
            np.ndarray: Smoothed grid of the same shape and dtype.

        Raises:
            InvalidInputError: If the grid is not 2-D or the window size is not a positive odd integer.
        """
        window_size = self.window_size if window_size is None else window_size
        SpatialSmoother._check_window_size(window_size)

        risk_grid = np.asarray(risk_grid)
        if risk_grid.ndim != 2:
            raise InvalidInputError(f'Expected a 2-D risk grid, got {risk_grid.ndim} dimensions.')

        valid = risk_grid[risk_grid != self.no_data]
        if valid.size == 0:
            return risk_grid.copy()
        if np.any(valid < 0):
            raise InvalidInputError('Risk tiers must be non-negative integers.')

        smoothed = SpatialSmoother._majority_filter(
            np.ascontiguousarray(risk_grid, dtype=np.int64),
            int(window_size // 2),
            int(self.no_data),
            int(valid.max()),
            bool(self.fill_missing),
        )
        return smoothed.astype(risk_grid.dtype)

    @staticmethod
    @njit(nogil=True)
    def _majority_filter(grid, half, no_data, max_tier, fill_missing):
        n_rows, n_columns = grid.shape
        out = np.empty_like(grid)
        counts = np.zeros(max_tier + 1, dtype=np.int64)

        for i in range(n_rows):
            for j in range(n_columns):
                if grid[i, j] == no_data and not fill_missing:
                    out[i, j] = no_data
                    continue

                counts[:] = 0
                for a in range(max(0, i - half), min(n_rows, i + half + 1)):
                    for b in range(max(0, j - half), min(n_columns, j + half + 1)):
                        value = grid[a, b]
                        if value != no_data:
                            counts[value] += 1

                # Lowest tier wins ties, strict '>' keeps the first maximum
                best = no_data
                best_count = 0
                for tier in range(max_tier + 1):
                    if counts[tier] > best_count:
                        best_count = counts[tier]
                        best = tier
                out[i, j] = best

        return out

    @staticmethod
    def _check_window_size(window_size):
        if not isinstance(window_size, (int, np.integer)) or window_size < 1 or window_size % 2 == 0:
            raise InvalidInputError(f"'window_size' must be a positive odd integer, got {window_size!r}.")
