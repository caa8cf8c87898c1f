"""
test_core.py - SpatialExperiment construction, consistency and subsetting

How to run:
    pytest tests/test_core.py -v

Fixture used: spe, spe_empty  (from conftest.py)
"""

import numpy as np
import pandas as pd
import pytest

from spatialexp.data.config import ConsistencyError, InvalidArgumentError, SpatialData
from spatialexp.data.core import SpatialExperiment
from spatialexp.data.images import ImageTable, RemoteUrl, SpatialImage

# ===========================================================================
# SECTION 1 — Object Creation
# ===========================================================================


class TestObjectCreation:

    def test_counts(self, spe):
        assert spe.n_cells == 20
        assert spe.n_genes == 8

    def test_sample_ids_in_order(self, spe):
        assert spe.sample_ids == ["s1", "s2"]

    def test_sample_id_column(self, spe):
        assert spe.sample_id.value_counts().to_dict() == {"s1": 10, "s2": 10}

    def test_in_tissue(self, spe):
        assert spe.in_tissue.dtype == bool
        assert spe.in_tissue.sum() == 10

    def test_minimal_init(self):
        """Only expression + IDs: one default sample, no images."""
        spe = SpatialExperiment(np.ones((4, 3)), [f"c{i}" for i in range(4)], ["g0", "g1", "g2"])

        assert spe.sample_ids == ["sample01"]
        assert len(spe.img_data) == 0
        assert np.isnan(spe.spatial.x).all()
        assert spe.in_tissue is None

    def test_sample_id_argument(self):
        spe = SpatialExperiment(np.ones((4, 2)), list("abcd"), ["g0", "g1"], sample_id=["x", "x", "y", "y"])
        assert spe.sample_ids == ["x", "y"]

    def test_sample_id_argument_wrong_length(self):
        with pytest.raises(ValueError):
            SpatialExperiment(np.ones((4, 2)), list("abcd"), ["g0", "g1"], sample_id=["x", "y"])

    def test_duplicate_cell_ids_rejected(self):
        with pytest.raises(ConsistencyError):
            SpatialExperiment(np.ones((2, 2)), ["a", "a"], ["g0", "g1"])

    def test_wrong_spatial_length(self):
        with pytest.raises(ValueError):
            SpatialExperiment(np.ones((3, 2)), list("abc"), ["g0", "g1"], spatial_coords={"x": [1, 2], "y": [1, 2]})

    def test_spatial_dataframe_aligned_by_id(self):
        coords = pd.DataFrame({"array_col": [3.0, 1.0, 2.0], "array_row": [30.0, 10.0, 20.0]}, index=list("cab"))
        spe = SpatialExperiment(np.ones((3, 2)), list("abc"), ["g0", "g1"], spatial_coords=coords)

        assert spe.spatial.x.tolist() == [1.0, 2.0, 3.0]
        assert spe.spatial.y.tolist() == [10.0, 20.0, 30.0]

    def test_metadata_extra_rows_dropped(self):
        meta = pd.DataFrame({"sample_id": ["s"] * 5}, index=list("abcde"))
        spe = SpatialExperiment(np.ones((3, 2)), list("abc"), ["g0", "g1"], cell_metadata=meta)
        assert len(spe.cell_meta) == 3

    def test_images_for_unknown_sample_rejected(self, spe_empty):
        table = ImageTable([("ghost", "lowres", SpatialImage(source=RemoteUrl("https://x.org/a.png")))])
        with pytest.raises(ConsistencyError):
            spe_empty.with_img_data(table)

    def test_img_data_from_dataframe(self, spe):
        df = spe.img_data.to_dataframe()
        rebuilt = SpatialExperiment(
            spe.expression, spe.cell_index, spe.gene_index,
            cell_metadata=spe.cell_meta, img_data=df,
        )
        assert rebuilt.img_data == spe.img_data


# ===========================================================================
# SECTION 2 — Consistency and value semantics
# ===========================================================================


class TestConsistency:

    def test_validate_consistency_passes(self, spe):
        status = spe.validate_consistency()
        assert status["overall"] is True

    def test_with_img_data_leaves_original(self, spe):
        new = spe.with_img_data(ImageTable())
        assert len(new.img_data) == 0
        assert len(spe.img_data) == 3
        # other components are shared, not rebuilt
        assert new.expression is spe.expression


# ===========================================================================
# SECTION 3 — Subsetting and combining
# ===========================================================================


class TestSubsetting:

    def test_subset_by_samples_drops_their_images(self, spe):
        sub = spe.subset_by_samples("s2")
        assert sub.n_cells == 10
        assert sub.sample_ids == ["s2"]
        assert sub.img_data.sample_ids == ["s2"]

    def test_subset_by_samples_unknown(self, spe):
        with pytest.raises(InvalidArgumentError):
            spe.subset_by_samples(["s9"])

    def test_subset_by_cells(self, spe):
        sub = spe.subset_by_cells(["spot_0", "spot_1", "spot_2"])
        assert sub.n_cells == 3
        assert sub.sample_ids == ["s1"]
        assert len(sub.img_data) == 2
        assert sub.spatial.x.tolist() == [0.0, 1.0, 2.0]

    def test_subset_by_cells_none_valid(self, spe):
        with pytest.raises(ValueError):
            spe.subset_by_cells(["nope"])

    def test_concat_round_trip(self, spe):
        parts = [spe.subset_by_samples("s1"), spe.subset_by_samples("s2")]
        combined = SpatialExperiment.concat(parts)

        assert combined.n_cells == spe.n_cells
        assert combined.sample_ids == ["s1", "s2"]
        assert combined.img_data == spe.img_data
        np.testing.assert_array_equal(combined.expression.get_dense(), spe.expression.get_dense())

    def test_concat_overlapping_samples(self, spe):
        with pytest.raises(ConsistencyError):
            SpatialExperiment.concat([spe, spe])


# ===========================================================================
# SECTION 4 — Coordinates, summary, serialization
# ===========================================================================


class TestCoordinatesAndExport:

    def test_unscaled_coords(self, spe):
        coords = spe.get_spatial_coords(["spot_3"])
        assert coords.tolist() == [[3.0, 6.0]]

    def test_scaled_coords_use_first_image(self, spe):
        """'s1' first image is 'lowres' (0.5); 's2' has a NaN scale factor."""
        coords = spe.get_spatial_coords(scale=True)
        assert coords[3].tolist() == [1.5, 3.0]
        assert np.isnan(coords[15]).all()

    def test_scaled_coords_named_image(self, spe):
        sub = spe.subset_by_samples("s1")
        coords = sub.get_spatial_coords(["spot_2"], image_id="hires", scale=True, as_dataframe=True)
        assert coords.loc["spot_2", "array_col"] == 4.0
        assert coords.loc["spot_2", "array_row"] == 8.0

    def test_spatial_data_scaled(self):
        sd = SpatialData(x=[1.0, 2.0], y=[3.0, 4.0]).scaled(2)
        assert sd.to_array().tolist() == [[2.0, 6.0], [4.0, 8.0]]

    def test_summary(self, spe):
        summary = spe.summary()
        assert summary["n_images"] == 3
        assert summary["n_images_loaded"] == 1
        assert summary["samples"] == ["s1", "s2"]

    def test_repr_mentions_images(self, spe):
        assert "3 (1 loaded)" in repr(spe)

    def test_pickle_round_trip(self, spe, tmp_path):
        path = tmp_path / "spe.pkl"
        spe.to_pickle(str(path))
        restored = SpatialExperiment.from_pickle(str(path))

        assert restored.n_cells == spe.n_cells
        assert restored.img_data == spe.img_data
        assert restored.img_data.row(0).data.is_loaded

    def test_to_anndata(self, spe):
        adata = spe.to_anndata()

        assert adata.shape == (20, 8)
        assert adata.obsm["spatial"].shape == (20, 2)
        assert "lowres" in adata.uns["spatial"]["s1"]["images"]
        assert adata.uns["spatial"]["s1"]["scalefactors"]["hires"] == 2.0
