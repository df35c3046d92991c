
from .points import load_points, coordinates
from .grids import (
    EnvironmentalGrid, coordinate_to_cell, extract_at_points, load_grid, save_grid, write_risk_grid, read_risk_grid
)

__all__ = [
    'load_points', 'coordinates', 'EnvironmentalGrid', 'coordinate_to_cell', 'extract_at_points', 'load_grid',
    'save_grid', 'write_risk_grid', 'read_risk_grid',
]
