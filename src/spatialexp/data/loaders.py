"""
loaders.py - Readers for platform-specific output directories

Currently supports 10X Visium (Space Ranger) output:

    sample
    |-- outs                                  (optional level)
        |-- raw/filtered_feature_bc_matrix.h5
        |-- raw/filtered_feature_bc_matrix/
            |-- barcodes.tsv[.gz]
            |-- features.tsv[.gz] (or genes.tsv)
            |-- matrix.mtx[.gz]
        |-- spatial/
            |-- scalefactors_json.json
            |-- tissue_lowres_image.png
            |-- tissue_positions_list.csv
"""
import json
import logging
import math
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import h5py
import numpy as np
import pandas as pd
from scipy import io as sio
from scipy import sparse

from .config import InvalidArgumentError, SpatialExperimentConfig, ValidationError
from .core import SpatialExperiment
from .expression import ExpressionMatrix
from .images import ImageRow, ImageTable, LocalPath, SpatialImage

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

VISIUM_IMAGES = {
    'lowres': 'tissue_lowres_image.png',
    'hires': 'tissue_hires_image.png',
    'detected': 'detected_tissue_image.jpg',
    'aligned': 'aligned_fiducials.jpg',
}

POSITION_COLUMNS = [
    'barcode', 'in_tissue', 'array_row', 'array_col',
    'pxl_col_in_fullres', 'pxl_row_in_fullres',
]


# ========== Count matrices ==========


def _first_existing(folder: Path, names: Sequence[str]) -> Optional[Path]:
    for name in names:
        candidate = folder / name
        if candidate.exists():
            return candidate
    return None


def _decode(values) -> List[str]:
    return [v.decode('utf-8') if isinstance(v, bytes) else str(v) for v in values]


def _read_10x_h5(path: Path) -> Tuple[sparse.csr_matrix, List[str], List[str], List[str]]:
    """Read a Cell Ranger HDF5 matrix (v3 'matrix' group or v2 per-genome group)."""
    with h5py.File(path, 'r') as f:
        if 'matrix' in f:
            grp = f['matrix']
            gene_ids = _decode(grp['features']['id'][:])
            symbols = _decode(grp['features']['name'][:])
        else:
            genomes = list(f.keys())
            if not genomes:
                raise ValueError(f"No count matrix found in {path}")
            grp = f[genomes[0]]
            gene_ids = _decode(grp['genes'][:])
            symbols = _decode(grp['gene_names'][:])

        shape = tuple(int(s) for s in grp['shape'][:])
        mat = sparse.csc_matrix(
            (grp['data'][:], grp['indices'][:], grp['indptr'][:]),
            shape=shape,
        )
        barcodes = _decode(grp['barcodes'][:])

    # Stored genes × barcodes
    return mat.T.tocsr(), barcodes, gene_ids, symbols


def _read_10x_mtx(folder: Path) -> Tuple[sparse.csr_matrix, List[str], List[str], List[str]]:
    """Read a Cell Ranger Matrix Market directory."""
    mtx = _first_existing(folder, ['matrix.mtx.gz', 'matrix.mtx'])
    barcodes_file = _first_existing(folder, ['barcodes.tsv.gz', 'barcodes.tsv'])
    features_file = _first_existing(folder, ['features.tsv.gz', 'features.tsv', 'genes.tsv.gz', 'genes.tsv'])

    missing = [name for name, f in [('matrix.mtx', mtx), ('barcodes.tsv', barcodes_file),
                                    ('features.tsv', features_file)] if f is None]
    if missing:
        raise FileNotFoundError(f"Missing {missing} in {folder}")

    mat = sparse.csr_matrix(sio.mmread(str(mtx)).T)
    barcodes = pd.read_csv(barcodes_file, sep='\t', header=None)[0].astype(str).tolist()
    features = pd.read_csv(features_file, sep='\t', header=None)
    gene_ids = features[0].astype(str).tolist()
    symbols = features[1].astype(str).tolist() if features.shape[1] > 1 else list(gene_ids)

    return mat, barcodes, gene_ids, symbols


def read_10x_counts(path: PathLike) -> Tuple[ExpressionMatrix, pd.DataFrame]:
    """
    Read a Cell Ranger / Space Ranger count matrix.

    Parameters
    ----------
    path : str or Path
        ``.h5`` file or ``*_feature_bc_matrix`` directory

    Returns
    -------
    ExpressionMatrix
        Counts (barcodes × genes), genes identified by feature ID
    pd.DataFrame
        Gene metadata with a ``symbol`` column
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Count matrix not found: {path}")

    if path.is_dir():
        mat, barcodes, gene_ids, symbols = _read_10x_mtx(path)
    else:
        mat, barcodes, gene_ids, symbols = _read_10x_h5(path)

    gene_index = pd.Index(gene_ids, name='gene')
    if gene_index.has_duplicates:
        gene_index = pd.Index(_make_unique(gene_ids), name='gene')

    expression = ExpressionMatrix(
        data=mat,
        cell_ids=pd.Index(barcodes),
        gene_names=gene_index,
        auto_sparse=False,
    )
    gene_meta = pd.DataFrame({'symbol': symbols}, index=gene_index)

    logger.info("Read %d barcodes × %d genes from %s", mat.shape[0], mat.shape[1], path)
    return expression, gene_meta


def _make_unique(values: Sequence[str]) -> List[str]:
    """Append ``-1``, ``-2``... to repeated values."""
    counts: Dict[str, int] = {}
    out = []
    for v in values:
        if v in counts:
            counts[v] += 1
            out.append(f"{v}-{counts[v]}")
        else:
            counts[v] = 0
            out.append(v)
    return out


# ========== Spot positions ==========


def read_positions(paths: Union[PathLike, Sequence[PathLike], Mapping[str, PathLike]]) -> pd.DataFrame:
    """
    Read Visium tissue position files.

    Parameters
    ----------
    paths : path, list of paths or {sample_id: path}
        ``tissue_positions_list.csv`` (no header) or ``tissue_positions.csv``
        (with header) files

    Returns
    -------
    pd.DataFrame
        Indexed by barcode; when several files are read, barcodes are
        prefixed with the 1-based file number (``"2_AAAC..."``). A
        ``sample_id`` column is added when sample IDs are known.
    """
    if isinstance(paths, Mapping):
        named = list(paths.items())
    elif isinstance(paths, (str, Path)):
        named = [(None, paths)]
    else:
        named = [(None, p) for p in paths]

    frames = []
    for i, (sid, path) in enumerate(named, start=1):
        path = Path(path)
        header = 0 if path.name == 'tissue_positions.csv' else None
        df = pd.read_csv(path, header=header)
        if df.shape[1] != len(POSITION_COLUMNS):
            raise ValidationError(
                f"{path} has {df.shape[1]} columns, expected {len(POSITION_COLUMNS)}"
            )
        df.columns = POSITION_COLUMNS
        df['barcode'] = df['barcode'].astype(str)
        df = df.set_index('barcode')
        if len(named) > 1:
            df.index = [f"{i}_{b}" for b in df.index]
            df.index.name = 'barcode'
        if sid is not None:
            df.insert(0, 'sample_id', sid)
        frames.append(df)

    df = pd.concat(frames)
    df['in_tissue'] = df['in_tissue'].astype(bool)
    return df


# ========== Images ==========


def _image_id_from_file(path: Path) -> str:
    for image_id, filename in VISIUM_IMAGES.items():
        if path.name == filename:
            return image_id
    return path.stem


def _read_scale_factors(path: Optional[Path]) -> dict:
    if path is None or not path.exists():
        return {}
    with open(path, 'r') as f:
        return json.load(f)


def read_img_data(path: Union[PathLike, Sequence[PathLike]] = '.',
                  sample_id: Optional[Union[str, Sequence[str]]] = None,
                  image_sources: Optional[Sequence[PathLike]] = None,
                  scale_factors: Optional[Union[PathLike, Sequence[PathLike]]] = None,
                  load: bool = True,
                  config: Optional[SpatialExperimentConfig] = None,
                  fetcher=None) -> ImageTable:
    """
    Build an image table from image files and Space Ranger scale factors.

    Parameters
    ----------
    path : path or list of paths
        One directory per sample; images are assigned to the sample whose
        directory contains them
    sample_id : str or list of str, optional
        Sample identifiers, one per ``path``; defaults to directory names
    image_sources : list of paths, optional
        Image files; defaults to ``tissue_lowres_image.png`` in each ``path``
    scale_factors : path or list of paths, optional
        ``scalefactors_json.json`` files, one per ``path``; defaults to
        the file inside each ``path``
    load : bool
        Read images into memory now
    config : SpatialExperimentConfig, optional
    fetcher : callable, optional
        Custom image reader

    Returns
    -------
    ImageTable
    """
    paths = [Path(path)] if isinstance(path, (str, Path)) else [Path(p) for p in path]

    if sample_id is None:
        sample_ids = [p.resolve().name for p in paths]
    elif isinstance(sample_id, str):
        sample_ids = [sample_id]
    else:
        sample_ids = [str(s) for s in sample_id]
    if len(sample_ids) != len(paths):
        raise InvalidArgumentError("'sample_id' should contain one value per 'path'")

    if image_sources is None:
        image_sources = [p / VISIUM_IMAGES['lowres'] for p in paths]
    if scale_factors is None:
        scale_factors = [p / 'scalefactors_json.json' for p in paths]
    elif isinstance(scale_factors, (str, Path)):
        scale_factors = [scale_factors]
    if len(scale_factors) != len(paths):
        raise InvalidArgumentError("'scale_factors' should contain one file per 'path'")

    sfs = {sid: _read_scale_factors(Path(f)) for sid, f in zip(sample_ids, scale_factors)}
    roots = [p.resolve() for p in paths]

    rows = []
    for img in image_sources:
        img = Path(img)
        owner = [sid for sid, root in zip(sample_ids, roots) if img.resolve().is_relative_to(root)]
        if not owner:
            raise InvalidArgumentError(f"Image {img} is not inside any sample directory")
        sid = owner[0]

        image_id = _image_id_from_file(img)
        scale = sfs[sid].get(f"tissue_{image_id}_scalef", math.nan)
        record = SpatialImage(source=LocalPath(str(img)), scale_factor=scale)
        if load:
            record = record.loaded(fetcher=fetcher, config=config)
        rows.append(ImageRow(sid, image_id, record))

    table = ImageTable(rows)
    logger.info("Registered %d image(s) (%d loaded)", len(table), table.n_loaded)
    return table


# ========== 10X Visium ==========


def _sample_base(sample: Path) -> Path:
    """Space Ranger writes into 'outs/'; accept either level."""
    outs = sample / 'outs'
    return outs if outs.is_dir() else sample


def read_10x_visium(samples: Union[PathLike, Sequence[PathLike], Mapping[str, PathLike]],
                    sample_id: Optional[Sequence[str]] = None,
                    type: str = 'HDF5',
                    data: str = 'filtered',
                    images: Union[str, Sequence[str]] = 'lowres',
                    load: bool = True,
                    config: Optional[SpatialExperimentConfig] = None,
                    fetcher=None) -> SpatialExperiment:
    """
    Load data from a 10X Visium experiment.

    Parameters
    ----------
    samples : path, list of paths or {sample_id: path}
        One Space Ranger output directory per sample; mapping keys are used
        as sample identifiers
    sample_id : list of str, optional
        Unique sample identifiers, one per directory; ignored if ``samples``
        is a mapping. Defaults to ``sample01``, ``sample02``...
    type : {'HDF5', 'sparse'}
        Count matrix format to read
    data : {'filtered', 'raw'}
        Spots mapped to tissue only, or all spots
    images : str or list of str
        Any of 'lowres', 'hires', 'detected', 'aligned'
    load : bool
        Read images into memory; otherwise only their paths are stored
    config : SpatialExperimentConfig, optional
    fetcher : callable, optional
        Custom image reader

    Returns
    -------
    SpatialExperiment
    """
    config = config or SpatialExperimentConfig()

    if type not in ('HDF5', 'sparse'):
        raise InvalidArgumentError(f"'type' should be 'HDF5' or 'sparse', got {type!r}")
    if data not in ('filtered', 'raw'):
        raise InvalidArgumentError(f"'data' should be 'filtered' or 'raw', got {data!r}")

    imgs = [images] if isinstance(images, str) else list(images)
    bad = [i for i in imgs if i not in VISIUM_IMAGES]
    if bad or not imgs:
        raise InvalidArgumentError(f"'images' should be any of {list(VISIUM_IMAGES)}, got {bad or imgs}")

    # Sample identifiers
    if isinstance(samples, Mapping):
        sids = [str(s) for s in samples.keys()]
        dirs = [Path(p) for p in samples.values()]
    else:
        dirs = [Path(samples)] if isinstance(samples, (str, Path)) else [Path(p) for p in samples]
        if sample_id is None:
            sids = [f"sample{i:02d}" for i in range(1, len(dirs) + 1)]
        else:
            sids = [sample_id] if isinstance(sample_id, str) else [str(s) for s in sample_id]
    if len(sids) != len(dirs) or len(set(sids)) != len(sids):
        raise InvalidArgumentError("'sample_id' should contain as many unique values as 'samples'")

    bases = [_sample_base(d) for d in dirs]
    spatial_dirs = [b / 'spatial' for b in bases]

    # Image files, skipping missing ones
    img_fns = [d / VISIUM_IMAGES[i] for d in spatial_dirs for i in imgs]
    missing = [f for f in img_fns if not f.exists()]
    if len(missing) == len(img_fns):
        raise FileNotFoundError(f"No matching files found for images={imgs}")
    if missing:
        logger.warning("Skipping missing images\n  %s", "\n  ".join(str(f) for f in missing))
    img_fns = [f for f in img_fns if f.exists()]

    img = read_img_data(
        spatial_dirs, sids, img_fns,
        [d / 'scalefactors_json.json' for d in spatial_dirs],
        load=load, config=config, fetcher=fetcher,
    )

    # Counts, positions and images per sample
    suffix = '.h5' if type == 'HDF5' else ''
    spel = []
    for i, (sid, base, sdir) in enumerate(zip(sids, bases, spatial_dirs), start=1):
        logger.info("Reading sample %s from %s", sid, base)
        expression, gene_meta = read_10x_counts(base / f"{data}_feature_bc_matrix{suffix}")

        pos_file = _first_existing(sdir, ['tissue_positions_list.csv', 'tissue_positions.csv'])
        if pos_file is None:
            raise FileNotFoundError(f"No tissue positions file in {sdir}")
        positions = read_positions(pos_file)

        barcodes = expression.cell_ids.astype(str)
        unknown = barcodes.difference(positions.index)
        if len(unknown):
            raise ValidationError(f"{len(unknown)} barcodes of sample {sid!r} have no spot position")
        positions = positions.loc[barcodes]

        cell_ids = barcodes if len(sids) == 1 else pd.Index([f"{i}_{b}" for b in barcodes])
        positions.index = cell_ids
        positions.insert(0, config.sample_id_col, sid)

        spel.append(SpatialExperiment(
            expression=expression,
            cell_ids=cell_ids,
            gene_names=expression.gene_names,
            cell_metadata=positions,
            gene_metadata=gene_meta,
            spatial_coords=positions,
            img_data=img.subset_samples([sid]),
            config=config,
        ))

    spe = SpatialExperiment.concat(spel)
    logger.info("Loaded %d spots × %d genes across %d sample(s)", spe.n_cells, spe.n_genes, len(sids))
    return spe
