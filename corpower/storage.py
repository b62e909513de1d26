"""Save and load PowerResult bundles as pickle files."""

from __future__ import annotations

import logging
import pickle
from pathlib import Path
from typing import Iterable, List, Sequence, Union

from corpower.errors import PersistenceError
from corpower.power_cor import PowerResult


logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
DEFAULT_SUFFIX = ".pkl"


def result_file_name(result: PowerResult, save_file: str) -> str:
    """``myFile.pkl`` becomes ``myFile_rho_0.9.pkl`` for a result from a rho sweep."""
    echo = result.echo
    path = Path(save_file)
    suffix = path.suffix or DEFAULT_SUFFIX
    if echo.varying_arg is None:
        return path.stem + suffix
    lead = dict(echo.varying_value)
    value = lead.get(echo.varying_arg, echo.varying_value[0][1])
    return f"{path.stem}_{echo.varying_arg}_{value:g}{suffix}"


def save_result(result: PowerResult, save_dir: PathLike, save_file: str) -> Path:
    if not isinstance(result, PowerResult):
        raise TypeError(f"expected a PowerResult, got {type(result).__name__}")
    target = Path(save_dir) / save_file
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "wb") as fh:
            pickle.dump(result, fh, protocol=pickle.HIGHEST_PROTOCOL)
    except (OSError, pickle.PicklingError) as exc:
        raise PersistenceError(f"could not write {target}: {exc}") from exc
    logger.info("saved power result to %s", target)
    return target


def save_results(results: Sequence[PowerResult], save_dir: PathLike, save_file: str) -> List[Path]:
    """Save each sweep value to its own file, named after the varying argument."""
    names = [result_file_name(result, save_file) for result in results]
    if len(set(names)) != len(names):
        raise PersistenceError(f"sweep values map to duplicate file names: {names}")
    return [save_result(result, save_dir, name) for result, name in zip(results, names)]


def load_result(path: PathLike) -> PowerResult:
    path = Path(path)
    try:
        with open(path, "rb") as fh:
            result = pickle.load(fh)
    except (OSError, pickle.UnpicklingError, EOFError, AttributeError, ImportError) as exc:
        raise PersistenceError(f"could not read {path}: {exc}") from exc
    if not isinstance(result, PowerResult):
        raise PersistenceError(f"{path} does not hold a PowerResult (found {type(result).__name__})")
    return result


def load_results(paths: Iterable[PathLike]) -> List[PowerResult]:
    return [load_result(path) for path in paths]
