"""
Thread environment configuration.

OpenMP/MKL thread counts are read by NumPy, SciPy and OpenCV when they are
first imported, so this module must be imported before any of them.
"""

import logging
import multiprocessing
import os
import platform


logger = logging.getLogger(__name__)

MAX_THREADS = 8


def setup_openmp_environment(num_threads=None):
    """
    Configure OpenMP thread counts for the numerical libraries.

    Args:
        num_threads: Thread count, by default all but two cores capped at MAX_THREADS

    Returns:
        The thread count in effect
    """
    # Several OpenMP runtimes get loaded side by side on Windows
    if platform.system() == 'Windows':
        os.environ['KMP_DUPLICATE_LIB_OK'] = 'TRUE'

    if num_threads is not None:
        os.environ['OMP_NUM_THREADS'] = str(max(1, int(num_threads)))
    elif 'OMP_NUM_THREADS' not in os.environ:
        num_cores = multiprocessing.cpu_count()
        os.environ['OMP_NUM_THREADS'] = str(max(1, min(num_cores - 2, MAX_THREADS)))

    os.environ.setdefault('MKL_NUM_THREADS', os.environ['OMP_NUM_THREADS'])
    os.environ.setdefault('NUMEXPR_NUM_THREADS', os.environ['OMP_NUM_THREADS'])

    return int(os.environ['OMP_NUM_THREADS'])


def setup_opencv_threads(num_threads: int):
    import cv2
    cv2.setNumThreads(num_threads)
    logger.debug(f"OpenCV using {cv2.getNumThreads()} threads")


THREADS = setup_openmp_environment()

__all__ = ['setup_openmp_environment', 'setup_opencv_threads', 'THREADS']
