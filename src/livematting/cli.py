from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from statistics import mean
from typing import Dict, List, Optional

from .errors import MattingError
from .pipeline import MODEL_REGISTRY, LiveMattingConfig, LiveMattingSession
from .render import ViewMode
from .scheduler import PerformanceSample, SchedulerState
from .sources import FrameSource, ImageSequenceSource, WebcamSource
from .surfaces import DisplaySurface, FrameBufferSurface, ImageDirectorySurface


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Real-time recurrent background matting over a camera or an image sequence.",
    )
    inputs = parser.add_mutually_exclusive_group(required=True)
    inputs.add_argument(
        "--input-dir",
        type=Path,
        help="Directory of frames, processed in sorted filename order.",
    )
    inputs.add_argument(
        "--camera",
        type=int,
        help="OpenCV camera index to capture from.",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Directory where rendered RGBA frames are written. Frames are kept in memory when omitted.",
    )
    parser.add_argument(
        "--composite",
        action="store_true",
        help="Flatten written frames over the view's backdrop colour.",
    )
    parser.add_argument(
        "--model",
        default="rvm-mobilenetv3",
        choices=list(MODEL_REGISTRY.keys()),
        help="Recurrent matting model. Available: " + ", ".join(MODEL_REGISTRY.keys()),
    )
    parser.add_argument(
        "--view",
        default=ViewMode.PLAIN_WHITE.value,
        choices=[mode.value for mode in ViewMode],
        help="What to render each cycle.",
    )
    parser.add_argument(
        "--weights-dir",
        type=Path,
        default=Path("~/.cache/livematting").expanduser(),
        help="Directory used to cache downloaded model weights.",
    )
    parser.add_argument(
        "--device",
        type=str,
        default="cuda:0",
        help="Torch device identifier, e.g. cuda:0 or cpu.",
    )
    parser.add_argument(
        "--fp16",
        dest="use_fp16",
        action="store_true",
        default=False,
        help="Use the FP16 checkpoints (CUDA only).",
    )
    parser.add_argument(
        "--no-fp16",
        dest="use_fp16",
        action="store_false",
        help="Use the FP32 checkpoints (default).",
    )
    parser.add_argument(
        "--tensorrt",
        dest="use_tensorrt",
        action="store_true",
        help="Prefer the TensorRT execution provider for ONNX models.",
    )
    parser.add_argument(
        "--downsample-ratio",
        type=float,
        default=0.5,
        help="Internal processing scale of the model, in (0, 1].",
    )
    parser.add_argument(
        "--width",
        type=int,
        default=640,
        help="Session frame width.",
    )
    parser.add_argument(
        "--height",
        type=int,
        default=480,
        help="Session frame height.",
    )
    parser.add_argument(
        "--fps",
        type=float,
        default=60.0,
        help="Display refresh rate used to pace cycles; 0 runs cycles back to back.",
    )
    parser.add_argument(
        "--max-cycles",
        type=int,
        default=None,
        help="Stop after this many completed cycles.",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds.",
    )
    parser.add_argument(
        "--preserve-state-on-recover",
        dest="reset_on_recover",
        action="store_false",
        help="Keep the recurrent state when restarting after a fault.",
    )
    parser.add_argument(
        "--json",
        dest="json_report",
        type=Path,
        default=None,
        help="Optional path to write a JSON performance report.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity.",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> LiveMattingConfig:
    return LiveMattingConfig(
        model_name=args.model,
        weights_dir=args.weights_dir.expanduser(),
        device=args.device,
        use_fp16=args.use_fp16,
        use_tensorrt=args.use_tensorrt,
        downsample_ratio=args.downsample_ratio,
        view_mode=args.view,
        refresh_rate=args.fps or None,
        reset_on_recover=args.reset_on_recover,
        frame_width=args.width,
        frame_height=args.height,
    )


def build_source(args: argparse.Namespace, config: LiveMattingConfig) -> FrameSource:
    if args.input_dir is not None:
        return ImageSequenceSource(args.input_dir.expanduser(), size=config.frame_size)
    return WebcamSource(args.camera, size=config.frame_size)


def build_surface(args: argparse.Namespace) -> DisplaySurface:
    if args.output_dir is not None:
        return ImageDirectorySurface(args.output_dir.expanduser(), composite=args.composite)
    return FrameBufferSurface()


def summarize(samples: List[PerformanceSample]) -> Dict[str, float]:
    if not samples:
        return {"cycles": 0}
    total = [sample.total_cycle_ms for sample in samples]
    inference = [sample.capture_to_inference_ms for sample in samples]
    return {
        "cycles": len(samples),
        "avg_cycle_ms": mean(total),
        "avg_capture_to_inference_ms": mean(inference),
        "avg_fps": 1000.0 / mean(total) if mean(total) > 0 else 0.0,
    }


async def run_session(session: LiveMattingSession, max_cycles: Optional[int], duration: Optional[float]) -> List[PerformanceSample]:
    samples: List[PerformanceSample] = []

    def on_sample(sample: PerformanceSample) -> None:
        samples.append(sample)
        if max_cycles is not None and len(samples) >= max_cycles:
            session.stop()

    session.add_observer(on_sample=on_sample)
    session.start()
    try:
        if duration is not None:
            try:
                await asyncio.wait_for(asyncio.shield(session.join()), timeout=duration)
            except asyncio.TimeoutError:
                session.stop()
        await session.join()
    finally:
        await session.close()
    return samples


def run(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = build_config(args)
    try:
        source = build_source(args, config)
        session = LiveMattingSession(config, source, build_surface(args))
    except MattingError as exc:
        raise SystemExit(f"[!] {exc}")

    print(f"[+] Running model: {config.model_name} (view={config.view_mode}, device={config.device})")
    samples = asyncio.run(run_session(session, args.max_cycles, args.duration))

    error = session.get_last_error()
    report = summarize(samples)
    if samples:
        print(
            f"    Processed {report['cycles']} frames | avg cycle {report['avg_cycle_ms']:.2f}ms"
            f" | avg inference {report['avg_capture_to_inference_ms']:.2f}ms | {report['avg_fps']:.1f} fps"
        )
    else:
        print("    No frames processed.")

    if args.json_report:
        args.json_report.parent.mkdir(parents=True, exist_ok=True)
        payload = dict(report, model=config.model_name, view=config.view_mode)
        if error is not None:
            payload["error"] = str(error)
        with args.json_report.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        print(f"[+] Wrote performance report to {args.json_report}")

    if error is not None or session.state is SchedulerState.FAULTED:
        raise SystemExit(f"[!] Loop faulted: {error}")


if __name__ == "__main__":
    run()
