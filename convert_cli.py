import argparse
import sys
import logging
import os
import traceback

from scene_converter import sensor_categories
from scheduler import ConversionConfig, convert_directory

BOX_SOURCES = ("all", "lidar", "camera", "radar")


def build_parser():
    parser = argparse.ArgumentParser(description="Convert a nuScenes dataset into one MCAP log per scene.")
    parser.add_argument("-m", "--metadata", required=True,
                        help="Path to the metadata directory holding the JSON tables (e.g. v1.0-mini).")
    parser.add_argument("-d", "--dataset", required=True,
                        help="Path to the dataset root containing samples/ and sweeps/.")
    parser.add_argument("-o", "--output", required=True,
                        help="Directory the <scene_id>.mcap logs are written to.")
    parser.add_argument("-j", "--jobs", type=int, default=1,
                        help="Number of scenes converted in parallel.")
    parser.add_argument("--decode_workers", type=int, default=4,
                        help="Decoder threads per scene.")
    parser.add_argument("--queue_size", type=int, default=64,
                        help="Maximum decoded messages buffered per sensor.")
    parser.add_argument("-n", "--scene_number", type=int, default=None,
                        help="Only convert the scene with this number (e.g. 61 for scene-0061).")
    parser.add_argument("--boxes-from", dest="boxes_from", nargs="+", default=["all"],
                        choices=BOX_SOURCES,
                        help="Sensor kinds whose sample data emit annotation boxes.")
    parser.add_argument("--no-progress", dest="progress", action="store_false",
                        help="Disable the progress bar.")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable debug logging.")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='[%(asctime)s] %(levelname)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )
    log = logging.getLogger(__name__)

    log.info("=" * 70)
    log.info("Starting nuScenes to MCAP conversion")
    log.info("=" * 70)
    log.info(f"Metadata:   {args.metadata}")
    log.info(f"Dataset:    {args.dataset}")
    log.info(f"Output Dir: {args.output}")
    log.info(f"Jobs:       {args.jobs}")
    if args.scene_number is not None:
        log.info(f"Scene:      {args.scene_number}")
    log.info("-" * 70)

    for label, path in (("Metadata", args.metadata), ("Dataset", args.dataset)):
        if not os.path.isdir(path):
            log.error(f"{label} path is not a valid directory: {path}")
            return 1

    try:
        config = ConversionConfig(
            scene_workers=args.jobs,
            decode_workers=args.decode_workers,
            queue_maxsize=args.queue_size,
            box_categories=sensor_categories(args.boxes_from),
            show_progress=args.progress,
        )
        summary = convert_directory(args.metadata, args.dataset, args.output,
                                    config=config, scene_number=args.scene_number)
    except Exception as e:
        log.error("=" * 70)
        log.error("--- A FATAL ERROR OCCURRED ---")
        log.error(f"Error: {e}")
        log.error("=" * 70)
        log.error(traceback.format_exc())
        log.error("Conversion FAILED.")
        return 1

    log.info("=" * 70)
    if not summary.ok:
        for scene_token, error in summary.failed.items():
            log.error(f"Scene {scene_token} failed: {error}")
        log.error(f"{len(summary.failed)} scene(s) failed to convert.")
        log.info("=" * 70)
        return 1

    if summary.skipped_files:
        log.warning(f"All scenes converted, {summary.skipped_files} files skipped.")
    else:
        log.info("All scenes converted successfully!")
    log.info("=" * 70)
    return 0


if __name__ == "__main__":
    sys.exit(main())
