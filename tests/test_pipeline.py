import numpy as np
import pytest

from roverkit.obstacles import Occupancy
from roverkit.pipeline import (
    DepthProjectorBuilder,
    PipelineRef,
    ThalassicBuilder,
)

SIZE = 16


def make_pipeline():
    return ThalassicBuilder(
        heightmap_dimensions=(SIZE, SIZE),
        cell_size=0.125,
        max_point_count=SIZE * SIZE,
        feature_size_cells=1,
        min_feature_count=1,
    ).build()


def make_projector(ref):
    return DepthProjectorBuilder(
        image_size=(SIZE, SIZE),
        focal_length_px=16.0,
        principal_point_px=(8.0, 8.0),
        max_depth=5.0,
    ).build(ref)


@pytest.fixture
def default_stride(monkeypatch):
    monkeypatch.delenv("STRIDE", raising=False)


@pytest.fixture
def unit_stride(monkeypatch):
    monkeypatch.setenv("STRIDE", "1")


def test_nothing_to_process_initially(default_stride):
    pipeline = make_pipeline()
    assert pipeline.will_process() is False
    assert pipeline.process() is None


def test_projector_reports_size(default_stride):
    projector = make_projector(make_pipeline().get_ref())
    assert projector.image_size == (SIZE, SIZE)
    assert projector.pixel_count == SIZE * SIZE


def test_project_queues_work_and_process_clears_it(default_stride):
    pipeline = make_pipeline()
    projector = make_projector(pipeline.get_ref())
    points = projector.project(np.zeros(SIZE * SIZE, dtype=np.uint16), np.eye(4), 1.0)
    assert points.shape == (SIZE * SIZE, 4)
    assert (points[:, 3] == 0).all()
    assert pipeline.will_process() is True
    result = pipeline.process()
    assert result.shape == (SIZE, SIZE)
    assert pipeline.will_process() is False
    assert pipeline.process() is None


def test_empty_cloud_gives_occupied_border(default_stride):
    pipeline = make_pipeline()
    projector = make_projector(pipeline.get_ref())
    projector.project(np.zeros(SIZE * SIZE, dtype=np.uint16), np.eye(4), 1.0)
    result = pipeline.process()
    # default radius 0.25 m over 0.125 m cells
    inner = result[3:14, 3:14]
    assert (inner == Occupancy.UNKNOWN).all()
    border = result.copy()
    border[3:14, 3:14] = Occupancy.OCCUPIED
    assert (border == Occupancy.OCCUPIED).all()


def test_set_radius_widens_border(default_stride):
    pipeline = make_pipeline()
    projector = make_projector(pipeline.get_ref())
    pipeline.set_radius(0.5)
    projector.project(np.zeros(SIZE * SIZE, dtype=np.uint16), np.eye(4), 1.0)
    result = pipeline.process()
    assert (result[5:12, 5:12] == Occupancy.UNKNOWN).all()
    assert (result[4, :] == Occupancy.OCCUPIED).all()
    assert (result[:, 4] == Occupancy.OCCUPIED).all()


def test_flat_wall_marks_free_cell(unit_stride):
    pipeline = make_pipeline()
    projector = make_projector(pipeline.get_ref())
    points = projector.project(np.ones(SIZE * SIZE, dtype=np.uint16), np.eye(4), 1.0)
    assert (points[:, 3] == 1).all()
    np.testing.assert_allclose(points[:, 0], 1.0)
    result = pipeline.process()
    assert np.argwhere(result == Occupancy.FREE).tolist() == [[3, 8]]


def test_observations_persist_until_reset(unit_stride):
    pipeline = make_pipeline()
    projector = make_projector(pipeline.get_ref())
    projector.project(np.ones(SIZE * SIZE, dtype=np.uint16), np.eye(4), 1.0)
    first = pipeline.process()

    projector.project(np.zeros(SIZE * SIZE, dtype=np.uint16), np.eye(4), 1.0)
    second = pipeline.process()
    np.testing.assert_array_equal(first, second)

    pipeline.reset_heightmap()
    projector.project(np.zeros(SIZE * SIZE, dtype=np.uint16), np.eye(4), 1.0)
    third = pipeline.process()
    assert not (third == Occupancy.FREE).any()


def test_noop_ref_is_not_connected(default_stride):
    pipeline = make_pipeline()
    projector = make_projector(PipelineRef.noop())
    projector.project(np.zeros(SIZE * SIZE, dtype=np.uint16), np.eye(4), 1.0)
    assert pipeline.will_process() is False


def test_project_without_storage_raises(default_stride):
    ref = PipelineRef.noop()
    projector = make_projector(ref)
    ref._shared = None
    with pytest.raises(RuntimeError):
        projector.project(np.zeros(SIZE * SIZE, dtype=np.uint16), np.eye(4), 1.0)


def test_wrong_depth_count_raises(default_stride):
    projector = make_projector(make_pipeline().get_ref())
    with pytest.raises(ValueError):
        projector.project(np.zeros(10, dtype=np.uint16), np.eye(4), 1.0)


@pytest.mark.parametrize("stride", ["abc", "-1", "0", "99999999999"])
def test_invalid_stride_raises(monkeypatch, stride):
    monkeypatch.setenv("STRIDE", stride)
    with pytest.raises(ValueError):
        make_projector(PipelineRef.noop())


def test_invalid_builders_raise():
    with pytest.raises(ValueError):
        ThalassicBuilder((0, 8), 0.1, 10, 1, 1).build()
    with pytest.raises(ValueError):
        DepthProjectorBuilder((8, 0), 1.0, (0.0, 0.0), 1.0).build(PipelineRef.noop())