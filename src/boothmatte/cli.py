from __future__ import annotations

import argparse
import json
import logging
import time
from pathlib import Path
from statistics import mean
from typing import Dict, Iterable, List, Optional

from PIL import Image

from .config import LiveViewMode, MattingSettings, Quality
from .errors import ModelUnavailableError
from .live import InlineExecutor
from .registry import MODEL_REGISTRY, ModelRegistry
from .service import BackgroundRemovalService

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".bmp", ".tiff", ".webp"}
DEFAULT_MODELS_DIR = Path("~/.cache/boothmatte").expanduser()


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--models-dir",
        type=Path,
        default=DEFAULT_MODELS_DIR,
        help="Directory holding the ONNX model files.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity.",
    )


def _add_processing(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--edge-refinement",
        type=int,
        default=50,
        help="Edge refinement level 0-100. <=5 skips refinement entirely.",
    )
    parser.add_argument(
        "--no-gpu",
        dest="use_gpu",
        action="store_false",
        help="Run on the CPU execution provider only.",
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Background removal for photo booth stills and live view.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    still = subparsers.add_parser("still", help="Remove the background from still photos.")
    still.add_argument("images", nargs="+", type=Path, help="Photos to process.")
    still.add_argument(
        "--quality",
        default=Quality.MEDIUM.value,
        choices=[q.value for q in Quality],
        help="Processing resolution tier.",
    )
    still.add_argument(
        "--json",
        dest="json_report",
        type=Path,
        default=None,
        help="Optional path to write a JSON timing report.",
    )
    _add_processing(still)
    _add_common(still)

    models = subparsers.add_parser("models", help="List registered models and their availability.")
    models.add_argument(
        "--download",
        action="store_true",
        help="Download missing models that have a known source.",
    )
    _add_common(models)

    replay = subparsers.add_parser("replay", help="Feed image files through the live-view pipeline.")
    replay.add_argument("frame_dir", type=Path, help="Directory of frames, processed in name order.")
    replay.add_argument("--output-dir", type=Path, required=True, help="Where processed frames are written.")
    replay.add_argument("--background", type=Path, default=None, help="Replacement background image.")
    replay.add_argument(
        "--mode",
        default=LiveViewMode.RESPONSIVE.value,
        choices=[m.value for m in LiveViewMode],
        help="Live-view mode.",
    )
    _add_processing(replay)
    _add_common(replay)

    return parser.parse_args(argv)


def _iter_images(path: Path) -> Iterable[Path]:
    for file in sorted(path.iterdir()):
        if file.is_file() and file.suffix.lower() in IMAGE_EXTENSIONS:
            yield file


def run_still(args: argparse.Namespace) -> int:
    settings = MattingSettings(
        quality=args.quality,
        use_gpu=args.use_gpu,
        edge_refinement=args.edge_refinement,
        models_dir=args.models_dir,
    )
    results: Dict[str, Dict[str, object]] = {}
    failures = 0
    with BackgroundRemovalService(settings) as service:
        for image_path in args.images:
            image_path = image_path.expanduser()
            result = service.remove_background(image_path, settings.quality)
            results[str(image_path)] = result.as_dict()
            if not result.success:
                failures += 1
                print(f"[!] {image_path}: {result.error}")
                continue
            note = " (degraded: original copied)" if result.degraded else ""
            print(f"[+] {image_path.name} -> {result.foreground_path.name} in {result.elapsed:.3f}s{note}")
        print(f"    {service.gpu_status()}")

    timings = [r["elapsed_seconds"] for r in results.values() if r["success"]]
    if timings:
        print(f"    Processed {len(timings)} images | total {sum(timings):.2f}s | avg {mean(timings):.3f}s")

    if args.json_report and results:
        args.json_report.parent.mkdir(parents=True, exist_ok=True)
        with args.json_report.open("w", encoding="utf-8") as handle:
            json.dump(results, handle, indent=2)
        print(f"[+] Wrote report to {args.json_report}")
    return 1 if failures else 0


def run_models(args: argparse.Namespace) -> int:
    registry = ModelRegistry(args.models_dir)
    status = 0
    for model_type in MODEL_REGISTRY:
        info = registry.get_model_info(model_type)
        available = registry.is_available(model_type)
        if not available and args.download:
            try:
                registry.download_model(model_type)
                available = True
            except ModelUnavailableError as exc:
                print(f"[!] {exc}")
                status = 1
        marker = "+" if available else "-"
        print(
            f"[{marker}] {model_type.value:<11} {info.name:<11} input {info.input_size:>3}px "
            f"speed {info.speed_multiplier:.1f}x  {info.path}"
        )
        if info.description:
            print(f"    {info.description}")
    return status


def run_replay(args: argparse.Namespace) -> int:
    frame_dir = args.frame_dir.expanduser()
    if not frame_dir.is_dir():
        raise SystemExit(f"Frame directory {frame_dir} does not exist.")
    output_dir = args.output_dir.expanduser()
    output_dir.mkdir(parents=True, exist_ok=True)

    settings = MattingSettings(
        use_gpu=args.use_gpu,
        edge_refinement=args.edge_refinement,
        models_dir=args.models_dir,
        live_view_mode=args.mode,
        background_path=args.background,
    )
    timings: List[float] = []
    with BackgroundRemovalService(settings, executor=InlineExecutor()) as service:
        if not service.initialize():
            raise SystemExit(f"No matting model could be loaded from {settings.models_dir}.")
        print(f"[+] Live view mode: {service.live.mode.value} | {service.gpu_status()}")
        for frame_path in _iter_images(frame_dir):
            data = frame_path.read_bytes()
            with Image.open(frame_path) as img:
                width, height = img.size
            start = time.perf_counter()
            output = service.process_live_frame(data, width, height)
            timings.append(time.perf_counter() - start)
            (output_dir / f"{frame_path.stem}.jpg").write_bytes(output)

    if not timings:
        print("    No frames found.")
        return 0
    avg = mean(timings)
    print(f"    Replayed {len(timings)} frames | avg {avg * 1000:.1f}ms | {1.0 / avg if avg else 0:.1f} FPS")
    return 0


def run(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args.models_dir = args.models_dir.expanduser()
    if args.command == "still":
        return run_still(args)
    if args.command == "models":
        return run_models(args)
    return run_replay(args)


def main() -> None:
    raise SystemExit(run())


if __name__ == "__main__":
    main()
