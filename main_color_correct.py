"""
Batch colour correction of an underwater dive.

Frames are processed one by one in natural filename order, which is taken to
be the order of the dive, so that depth-band refinement sees the depths the
camera passed through.
"""

# Must run before NumPy/OpenCV are imported
import env_setup

import argparse
import datetime
import json
import logging
import os
import sys
import time

import matplotlib as mpl
mpl.use('Agg')  # no display on batch hosts
import natsort
import numpy as np
import PIL.Image as pil
from matplotlib import pyplot as plt
from tqdm import tqdm

from calibration_store import CalibrationLoadError, CalibrationStore, MissingCalibrationError
from attenuation_model import CalibrationDomainError
from color_correction import get_quality_metrics
from correction_session import SESSION_PRESETS, CalibrationMode, ColorCorrectionSession
from underwater_scene import default_scene, load_scene, save_scene


IMAGE_EXTENSIONS = ('.png', '.jpg', '.jpeg', '.bmp', '.tiff', '.webp')
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def load_frame(image_path):
    """Read an image file as a BGR uint8 array."""
    rgb = np.array(pil.open(image_path).convert('RGB'))
    return np.ascontiguousarray(rgb[:, :, ::-1])


def save_frame(bgr, out_path):
    pil.fromarray(np.ascontiguousarray(bgr[:, :, ::-1])).save(out_path)


def load_depth_log(depth_log_path):
    """
    Per-frame depths from a JSON object mapping file names (with or without
    extension) to depth in metres.
    """
    with open(depth_log_path, 'r') as f:
        depth_log = json.load(f)
    if not isinstance(depth_log, dict):
        raise ValueError(f"Depth log {depth_log_path} must be a JSON object")
    return {str(k): float(v) for k, v in depth_log.items()}


def frame_depth(file_name, depth_log, default_depth):
    base_name = os.path.splitext(file_name)[0]
    for key in (file_name, base_name):
        if key in depth_log:
            return depth_log[key]
    return default_depth


def load_features(features_dir, file_name):
    """
    Feature points of a frame from <features_dir>/<base name>.json holding
    {"points": [[x, y], ...], "distances": [...]}. None if there is no file.
    """
    if features_dir is None:
        return None
    path = os.path.join(features_dir, os.path.splitext(file_name)[0] + '.json')
    if not os.path.isfile(path):
        return None
    with open(path, 'r') as f:
        data = json.load(f)
    return data.get('points', []), data.get('distances', [])


def save_comparison(original_bgr, corrected_bgr, out_path, title=None):
    fig, axes = plt.subplots(1, 2, figsize=(10, 4))
    axes[0].imshow(original_bgr[:, :, ::-1])
    axes[0].set_title('Original')
    axes[0].axis('off')

    axes[1].imshow(np.clip(corrected_bgr[:, :, ::-1], 0, 255).astype(np.uint8))
    axes[1].set_title('Corrected')
    axes[1].axis('off')

    if title:
        fig.suptitle(title)
    plt.tight_layout()
    fig.savefig(out_path)
    plt.close(fig)


def process_file(session, file_name, input_base_path, output_images_path, comparisons_path, depth, features_dir):
    """
    Correct a single frame.

    Returns:
        Dict of quality metrics, or None if the frame was skipped
    """
    input_file_path = os.path.join(input_base_path, file_name)
    base_name = os.path.splitext(file_name)[0]

    try:
        img = load_frame(input_file_path)
    except FileNotFoundError:
        logging.error(f"Input image not found: {input_file_path}")
        return None

    session.set_depth(depth)
    features = load_features(features_dir, file_name)

    try:
        if features is not None:
            corrected = session.color_correct_spatial(img, *features)
        else:
            corrected = session.color_correct(img)
    except MissingCalibrationError as e:
        logging.warning(f"Skipping {file_name}: {e}")
        return None
    except CalibrationDomainError as e:
        logging.warning(f"Skipping {file_name}: calibration failed ({e})")
        return None

    save_frame(corrected, os.path.join(output_images_path, base_name + '.png'))
    if comparisons_path is not None:
        save_comparison(img, corrected, os.path.join(comparisons_path, base_name + '_comparison.png'),
                        title=f"{file_name} at {depth:.2f} m")

    metrics = get_quality_metrics(img, corrected, session.scene)
    metrics['depth'] = depth
    logging.info(f"{file_name}: " + ', '.join(f"{k}={v:.3f}" for k, v in metrics.items()))
    return metrics


def build_arg_parser():
    parser = argparse.ArgumentParser(description="Underwater colour correction by attenuation model inversion")
    parser.add_argument('--input', type=str, required=True, help='Input image or folder of frames')
    parser.add_argument('--output_folder', type=str, default='./output_color_correct', help='Folder to save results')
    parser.add_argument('--scene', type=str, default=None, help='Scene constants JSON (default: example scene)')
    parser.add_argument('--depth', type=float, default=None, help='Depth of frames missing from the depth log')
    parser.add_argument('--depth-log', type=str, default=None, help='JSON mapping frame names to depth')
    parser.add_argument('--features', type=str, default=None,
                        help='Folder of per-frame feature JSON files; enables per-pixel correction')
    parser.add_argument('--prior', type=str, default=None, help='Use attenuation values stored in this file')
    parser.add_argument('--save', type=str, default=None, help='Save computed attenuation values to this file')
    parser.add_argument('--optimize', action='store_true', help='Refine attenuation per depth band')
    parser.add_argument('--range', type=float, default=0.5, help='Depth band height for --optimize (m)')
    parser.add_argument('--spectral-veiling-light', action='store_true',
                        help='Integrate veiling light from the scene spectra instead of sampling the background')
    parser.add_argument('--preset', type=str, default='default', choices=list(SESSION_PRESETS),
                        help='Session option preset')
    parser.add_argument('--comparisons', action='store_true', help='Save side by side comparison figures')
    parser.add_argument('--log-screen', action='store_true', help='Log every processing stage')
    parser.add_argument('--check-time', action='store_true', help='Log the time of every processing stage')
    parser.add_argument('--threads', type=int, default=env_setup.THREADS, help='OpenCV thread count')
    return parser


def main(argv=None):
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, handlers=[logging.StreamHandler(sys.stdout)])
    args = build_arg_parser().parse_args(argv)
    env_setup.setup_opencv_threads(args.threads)

    if os.path.isfile(args.input):
        files_to_process = [os.path.basename(args.input)]
        input_base_path = os.path.dirname(args.input)
    elif os.path.isdir(args.input):
        files_to_process = [f for f in os.listdir(args.input) if os.path.isfile(os.path.join(args.input, f))
                            and f.lower().endswith(IMAGE_EXTENSIONS)]
        files_to_process = natsort.natsorted(files_to_process)
        input_base_path = args.input
    else:
        logging.error(f"Input path {args.input} is not a valid file or directory.")
        return 1

    if not files_to_process:
        logging.info(f"No image files found in {args.input}.")
        return 0

    timestamp_str = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    main_output_folder = os.path.join(args.output_folder, timestamp_str)
    output_images_path = os.path.join(main_output_folder, "CorrectedImages")
    logs_path = os.path.join(main_output_folder, "Logs")
    comparisons_path = os.path.join(main_output_folder, "Comparisons") if args.comparisons else None
    for path in (output_images_path, logs_path, comparisons_path):
        if path is not None:
            os.makedirs(path, exist_ok=True)

    main_log_file_path = os.path.join(logs_path, f"processing_summary_{timestamp_str}.txt")
    main_file_handler = logging.FileHandler(main_log_file_path, mode='w')
    main_file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(main_file_handler)

    try:
        return _run(args, files_to_process, input_base_path, main_output_folder,
                    output_images_path, comparisons_path)
    finally:
        logging.getLogger().removeHandler(main_file_handler)
        main_file_handler.close()


def _run(args, files_to_process, input_base_path, main_output_folder, output_images_path, comparisons_path):
    if args.scene is not None:
        try:
            scene = load_scene(args.scene)
        except (OSError, ValueError, TypeError) as e:
            logging.error(f"ERROR: Could not load scene constants from {args.scene}: {e}")
            return 1
    else:
        first = load_frame(os.path.join(input_base_path, files_to_process[0]))
        scene = default_scene((first.shape[1], first.shape[0]))
        logging.info(f"No scene file given, using example scene {scene}")
    save_scene(scene, os.path.join(main_output_folder, 'scene.json'))

    store = CalibrationStore()
    if args.prior is not None:
        try:
            store.load(args.prior)
        except CalibrationLoadError as e:
            logging.error(f"ERROR: {e}")
            return 1

    depth_log = load_depth_log(args.depth_log) if args.depth_log is not None else {}

    mode = CalibrationMode.from_flags(prior_data=args.prior is not None, optimize=args.optimize)
    options = {'range': args.range, 'est_veiling_light': not args.spectral_veiling_light}
    if args.save is not None:
        options['save_data'] = True
    if args.log_screen:
        options['log_screen'] = True
    if args.check_time:
        options['check_time'] = True
    session = ColorCorrectionSession(scene, mode, store, preset=args.preset, **options)
    logging.info(f"Found {len(files_to_process)} images to process. Calibration mode: {mode.value}")

    total_start_time = time.time()
    all_metrics = {}
    # Sequential: the session carries depth-band state from frame to frame
    for file_name in tqdm(files_to_process, desc="Correcting frames"):
        depth = frame_depth(file_name, depth_log, args.depth)
        if depth is None:
            logging.warning(f"No depth for {file_name}, skipping")
            continue
        metrics = process_file(session, file_name, input_base_path, output_images_path,
                               comparisons_path, depth, args.features)
        if metrics is not None:
            all_metrics[file_name] = metrics

    if args.save is not None:
        session.save(args.save)
        logging.info(f"Attenuation values saved to {args.save}")

    with open(os.path.join(main_output_folder, 'metrics.json'), 'w') as f:
        json.dump(all_metrics, f, indent=2)

    total_elapsed_time = time.time() - total_start_time
    logging.info(f'Corrected {len(all_metrics)} of {len(files_to_process)} images in {total_elapsed_time:.2f} seconds.')
    logging.info(f"All results saved in: {main_output_folder}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
