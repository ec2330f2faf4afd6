"""Core algorithms and data structures for kcpfit."""

from .batch import (
    BatchError,
    calculate_sigmas,
    find_change_points,
    find_single_change_point,
    run_change_point_finder,
    select_uids,
)
from .distribution import SegmentDistributionBuilder
from .gaussian import Gaussian
from .kcp import KCP, calc_sigma, generate_segments, linear_regression, single_change_point
from .lm import FitResult, LevenbergMarquardt, Model, gauss_jordan
from .models import available_models, get_model, register_model
from .tables import Metadata, Molecule, MoleculeArchive, segments_from_frame, segments_to_frame

__all__ = [
    "BatchError",
    "calculate_sigmas",
    "find_change_points",
    "find_single_change_point",
    "run_change_point_finder",
    "select_uids",
    "SegmentDistributionBuilder",
    "Gaussian",
    "KCP",
    "calc_sigma",
    "generate_segments",
    "linear_regression",
    "single_change_point",
    "FitResult",
    "LevenbergMarquardt",
    "Model",
    "gauss_jordan",
    "available_models",
    "get_model",
    "register_model",
    "Metadata",
    "Molecule",
    "MoleculeArchive",
    "segments_from_frame",
    "segments_to_frame",
]
