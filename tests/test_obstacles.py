import numpy as np
import pytest

from roverkit.obstacles import Occupancy, expand_obstacles, filter_obstacles, points_to_obstacles

SIZE = 16
CELL = 0.1


def _grid_points(heights=None, offset=(0.0, 0.0), valid=True):
    py, px = np.mgrid[0:SIZE, 0:SIZE]
    z = np.zeros((SIZE, SIZE)) if heights is None else heights
    w = np.full((SIZE, SIZE), 1.0 if valid else 0.0)
    pts = np.stack(
        [px * CELL + CELL / 2 + offset[0], py * CELL + CELL / 2 + offset[1], z, w],
        axis=-1,
    )
    return pts.reshape(-1, 4)


def _free_grid():
    return np.full((SIZE, SIZE), Occupancy.FREE, dtype=np.uint32)


def test_occupancy_occupied():
    assert Occupancy.OCCUPIED.occupied()
    assert not Occupancy.FREE.occupied()
    assert not Occupancy.UNKNOWN.occupied()


def test_flat_plane_is_free():
    result = points_to_obstacles(_grid_points(), SIZE, SIZE, CELL, 0.1, np.zeros((SIZE, SIZE)))
    assert (result[1 : SIZE - 1, 1 : SIZE - 1] == Occupancy.FREE).all()
    assert (result[0, :] == Occupancy.UNKNOWN).all()
    assert (result[:, 0] == Occupancy.UNKNOWN).all()


def test_spike_is_occupied_and_input_untouched():
    heights = np.zeros((SIZE, SIZE))
    heights[8, 8] = 1.0
    start = np.zeros((SIZE, SIZE), dtype=np.uint32)
    start[0, 0] = Occupancy.OCCUPIED
    result = points_to_obstacles(_grid_points(heights), SIZE, SIZE, CELL, 0.1, start)
    assert result[8, 8] == Occupancy.OCCUPIED
    assert result[2, 2] == Occupancy.FREE
    assert result[0, 0] == Occupancy.OCCUPIED
    assert (start[1:, 1:] == Occupancy.UNKNOWN).all()


def test_invalid_points_change_nothing():
    start = _free_grid()
    start[3, 3] = Occupancy.OCCUPIED
    result = points_to_obstacles(_grid_points(valid=False), SIZE, SIZE, CELL, 0.1, start)
    np.testing.assert_array_equal(result, start)


def test_negative_coordinates_are_ignored():
    points = _grid_points(offset=(-5.0, 0.0))
    result = points_to_obstacles(points, SIZE, SIZE, CELL, 0.1, np.zeros((SIZE, SIZE)))
    assert not result.any()


def test_too_few_points_rejected():
    with pytest.raises(ValueError):
        points_to_obstacles(np.zeros((10, 4)), SIZE, SIZE, CELL, 0.1, np.zeros((SIZE, SIZE)))


def test_filter_keeps_unknown_grid():
    grid = np.zeros((SIZE, SIZE), dtype=np.uint32)
    np.testing.assert_array_equal(filter_obstacles(grid, 1, 1), grid)


def test_filter_marks_border_and_keeps_free():
    out = filter_obstacles(_free_grid(), 1, 1)
    assert (out[0, :] == Occupancy.OCCUPIED).all()
    assert (out[:, SIZE - 1] == Occupancy.OCCUPIED).all()
    assert out[5, 5] == Occupancy.FREE


def test_filter_drops_isolated_obstacle():
    grid = _free_grid()
    grid[8, 8] = Occupancy.OCCUPIED
    assert filter_obstacles(grid, 1, 2)[8, 8] == Occupancy.FREE
    kept = filter_obstacles(grid, 1, 1)
    assert kept[8, 8] == Occupancy.OCCUPIED
    assert kept[7, 8] == Occupancy.OCCUPIED
    assert kept[3, 3] == Occupancy.FREE


def test_filter_keeps_cluster():
    grid = _free_grid()
    grid[8, 8] = grid[8, 9] = grid[9, 8] = Occupancy.OCCUPIED
    assert filter_obstacles(grid, 1, 3)[8, 8] == Occupancy.OCCUPIED


def test_filter_min_count_zero_needs_a_neighbour():
    assert filter_obstacles(_free_grid(), 2, 0)[6, 6] == Occupancy.FREE


def test_filter_unknown_stays_unknown():
    grid = _free_grid()
    grid[8, 8] = Occupancy.OCCUPIED
    grid[8, 9] = Occupancy.UNKNOWN
    assert filter_obstacles(grid, 1, 1)[8, 9] == Occupancy.UNKNOWN


def test_filter_negative_rejected():
    with pytest.raises(ValueError):
        filter_obstacles(_free_grid(), -1, 1)


def test_expand_border_and_interior():
    out = expand_obstacles(_free_grid(), 2)
    assert out[2, 5] == Occupancy.OCCUPIED
    assert out[5, SIZE - 2] == Occupancy.OCCUPIED
    assert out[3, 3] == Occupancy.FREE


def test_expand_uses_manhattan_radius():
    grid = _free_grid()
    grid[8, 8] = Occupancy.OCCUPIED
    out = expand_obstacles(grid, 2)
    assert out[8, 10] == Occupancy.OCCUPIED
    assert out[9, 9] == Occupancy.OCCUPIED
    assert out[9, 10] == Occupancy.FREE


def test_expand_turns_nearby_unknown_into_occupied():
    grid = _free_grid()
    grid[8, 8] = Occupancy.OCCUPIED
    grid[8, 9] = Occupancy.UNKNOWN
    grid[4, 4] = Occupancy.UNKNOWN
    out = expand_obstacles(grid, 2)
    assert out[8, 9] == Occupancy.OCCUPIED
    assert out[4, 4] == Occupancy.UNKNOWN


def test_expand_huge_radius_fills_grid():
    out = expand_obstacles(_free_grid(), SIZE * 2)
    assert (out == Occupancy.OCCUPIED).all()


def test_expand_rejects_bad_input():
    with pytest.raises(ValueError):
        expand_obstacles(_free_grid(), -1)
    with pytest.raises(ValueError):
        expand_obstacles(np.zeros(SIZE), 1)