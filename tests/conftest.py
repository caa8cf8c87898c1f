"""
conftest.py - Shared test fixtures for spatialexp

pytest reads this file before running any test. Every fixture defined
here can be requested by name from any test module.

Fixtures fall into three groups:
  - small images written to disk, plus fetchers that avoid the network
  - in-memory SpatialExperiment objects with a prepared image table
  - a synthetic 10X Visium output directory on disk
"""

import json

import cv2
import h5py
import numpy as np
import pandas as pd
import pytest
from scipy import io as sio
from scipy import sparse

from spatialexp.data.config import FetchError
from spatialexp.data.core import SpatialExperiment
from spatialexp.data.images import ImageTable, LocalPath, RemoteUrl, SpatialImage

# ===========================================================================
# Constants — the size of our fake dataset
# ===========================================================================

N_SPOTS = 20  # total fake spots (10 per sample)
N_GENES = 8  # total fake genes
URL = "https://example.com/img.png"


# ===========================================================================
# Fixture 1: image files and fetchers
# ===========================================================================


def write_png(path, shape=(6, 8, 3), value=100):
    """Write a small uniform image and return its path as a string."""
    img = np.full(shape, value, dtype=np.uint8)
    assert cv2.imwrite(str(path), img)
    return str(path)


@pytest.fixture
def png_files(tmp_path):
    """
    Two tiny PNG files on disk: 'lowres' (6×8) and 'hires' (12×16).
    """
    return {
        "lowres": write_png(tmp_path / "tissue_lowres_image.png", (6, 8, 3), 50),
        "hires": write_png(tmp_path / "tissue_hires_image.png", (12, 16, 3), 200),
    }


class FakeFetcher:
    """
    Stand-in for the image reader.

    Returns a 4×4 black image for any source and remembers what it was
    asked for. Sources listed in ``fail_on`` raise FetchError instead.
    """

    def __init__(self, fail_on=()):
        self.calls = []
        self.fail_on = set(fail_on)

    def __call__(self, source):
        self.calls.append(source)
        key = getattr(source, "url", None) or getattr(source, "path", None)
        if key in self.fail_on:
            raise FetchError(f"cannot fetch {key}", source)
        return np.zeros((4, 4, 3), dtype=np.uint8)


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


# ===========================================================================
# Fixture 2: SpatialExperiment objects
# ===========================================================================


def make_spe(img_data=None, samples=("s1", "s2")):
    """Build a small experiment with N_SPOTS spread evenly over ``samples``."""
    rng = np.random.default_rng(42)
    per_sample = N_SPOTS // len(samples)

    expression = rng.integers(0, 5, (N_SPOTS, N_GENES)).astype(float)
    cell_ids = [f"spot_{i}" for i in range(N_SPOTS)]
    gene_names = [f"gene_{i}" for i in range(N_GENES)]

    cell_meta = pd.DataFrame(
        {
            "sample_id": [s for s in samples for _ in range(per_sample)],
            "in_tissue": [i % 2 == 0 for i in range(N_SPOTS)],
        },
        index=cell_ids,
    )
    spatial = {
        "x": np.arange(N_SPOTS, dtype=float),
        "y": np.arange(N_SPOTS, dtype=float) * 2,
    }

    return SpatialExperiment(
        expression=expression,
        cell_ids=cell_ids,
        gene_names=gene_names,
        cell_metadata=cell_meta,
        spatial_coords=spatial,
        img_data=img_data,
    )


@pytest.fixture
def spe_empty():
    """Two samples ('s1', 's2'), no images."""
    return make_spe()


@pytest.fixture
def spe(png_files):
    """
    Two samples with three images:

      position 0: ('s1', 'lowres')  file-backed, loaded,   scale 0.5
      position 1: ('s1', 'hires')   file-backed, unloaded, scale 2.0
      position 2: ('s2', 'lowres')  URL-backed,  unloaded, scale NaN
    """
    lowres = SpatialImage(
        source=LocalPath(png_files["lowres"]),
        raster=cv2.imread(png_files["lowres"]),
        scale_factor=0.5,
    )
    hires = SpatialImage(source=LocalPath(png_files["hires"]), scale_factor=2.0)
    remote = SpatialImage(source=RemoteUrl(URL))

    table = ImageTable(
        [
            ("s1", "lowres", lowres),
            ("s1", "hires", hires),
            ("s2", "lowres", remote),
        ]
    )
    return make_spe(img_data=table)


# ===========================================================================
# Fixture 3: synthetic 10X Visium output
# ===========================================================================


def write_visium_sample(root, barcodes_all, barcodes_filtered, gene_ids, symbols, images=("lowres",)):
    """
    Write one Space Ranger-like sample directory under ``root``.

    Both the HDF5 and the Matrix Market form of the raw and filtered
    matrices are written, so either 'type' can be read.
    """
    spatial = root / "spatial"
    spatial.mkdir(parents=True)

    rng = np.random.default_rng(0)
    counts_all = rng.integers(0, 4, (len(barcodes_all), len(gene_ids)))

    for kind, barcodes in [("raw", barcodes_all), ("filtered", barcodes_filtered)]:
        rows = [barcodes_all.index(b) for b in barcodes]
        mat = sparse.csc_matrix(counts_all[rows].T)  # genes × barcodes

        mtx_dir = root / f"{kind}_feature_bc_matrix"
        mtx_dir.mkdir()
        sio.mmwrite(str(mtx_dir / "matrix.mtx"), mat)
        pd.DataFrame(barcodes).to_csv(mtx_dir / "barcodes.tsv", sep="\t", header=False, index=False)
        pd.DataFrame({"id": gene_ids, "name": symbols, "type": "Gene Expression"}).to_csv(
            mtx_dir / "features.tsv", sep="\t", header=False, index=False
        )

        with h5py.File(root / f"{kind}_feature_bc_matrix.h5", "w") as f:
            grp = f.create_group("matrix")
            grp.create_dataset("data", data=mat.data)
            grp.create_dataset("indices", data=mat.indices)
            grp.create_dataset("indptr", data=mat.indptr)
            grp.create_dataset("shape", data=np.array(mat.shape))
            grp.create_dataset("barcodes", data=np.array(barcodes, dtype="S"))
            feats = grp.create_group("features")
            feats.create_dataset("id", data=np.array(gene_ids, dtype="S"))
            feats.create_dataset("name", data=np.array(symbols, dtype="S"))

    positions = pd.DataFrame(
        {
            "barcode": barcodes_all,
            "in_tissue": [1 if b in barcodes_filtered else 0 for b in barcodes_all],
            "array_row": range(len(barcodes_all)),
            "array_col": [2 * i for i in range(len(barcodes_all))],
            "pxl_a": [10 * i for i in range(len(barcodes_all))],
            "pxl_b": [20 * i for i in range(len(barcodes_all))],
        }
    )
    positions.to_csv(spatial / "tissue_positions_list.csv", header=False, index=False)

    with open(spatial / "scalefactors_json.json", "w") as f:
        json.dump({"tissue_lowres_scalef": 0.05, "tissue_hires_scalef": 0.2, "spot_diameter_fullres": 89.0}, f)

    if "lowres" in images:
        write_png(spatial / "tissue_lowres_image.png", (6, 8, 3), 30)
    if "hires" in images:
        write_png(spatial / "tissue_hires_image.png", (12, 16, 3), 60)


@pytest.fixture
def visium_dirs(tmp_path):
    """
    Two Visium samples on disk.

    section1: 6 spots (4 on tissue), lowres + hires images
    section2: 5 spots (3 on tissue), lowres image only
    """
    gene_ids = [f"ENSG{i:05d}" for i in range(5)]
    symbols = [f"G{i}" for i in range(5)]

    s1 = tmp_path / "section1"
    write_visium_sample(
        s1,
        [f"AAAC{i}-1" for i in range(6)],
        [f"AAAC{i}-1" for i in (0, 1, 3, 5)],
        gene_ids, symbols, images=("lowres", "hires"),
    )
    s2 = tmp_path / "section2"
    write_visium_sample(
        s2,
        [f"AAAC{i}-1" for i in range(5)],
        [f"AAAC{i}-1" for i in (1, 2, 4)],
        gene_ids, symbols, images=("lowres",),
    )
    return {"section1": s1, "section2": s2}
