"""Run one video through the batch pipeline and write its summary as JSON.

    python -m reidwatch.tools.run_on_video --input clip.mp4 --output out/summary.json
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

from reidwatch.core.engines import DetectionConfig, ReIdConfig
from reidwatch.core.events import LoggingEventSink
from reidwatch.core.types import Detection
from reidwatch.core.video.jobs import JobState
from reidwatch.core.video.service import VideoConfig, VideoProcessingService


class _DummyDetector:
    def detect(self, frame, config=None) -> list[Detection]:  # pragma: no cover - trivial
        return []


def run(args: argparse.Namespace) -> dict[str, Any]:
    detection = DetectionConfig(model_path=args.model, confidence_threshold=args.conf)
    reid_config = ReIdConfig(model_path=args.reid_model)
    if args.mock:
        detector = _DummyDetector()
    else:
        from reidwatch.core.detectors.yolo import YoloPersonDetector

        detector = YoloPersonDetector(detection)

    reid = None
    if not args.no_reid and not args.mock:
        from reidwatch.core.reid.osnet import OSNetReIdEngine

        reid = OSNetReIdEngine(reid_config)

    service = VideoProcessingService(
        detector,
        reid,
        event_sink=LoggingEventSink(),
        config=VideoConfig(detection=detection, reid=reid_config),
    )
    job = service.create_job(args.input, frame_skip=args.frame_skip, extract_features=not args.no_reid)
    service.process_job(job)
    if job.state is JobState.FAILED:
        raise SystemExit(f"Processing failed: {job.error}")

    summary = job.to_summary()
    out_path = Path(args.output)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump(summary, f, indent=2)
    print(f"Wrote summary of {summary['unique_persons']} unique persons to {out_path}")
    return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Count unique persons in a video file")
    parser.add_argument("--input", required=True, help="Path to video file")
    parser.add_argument("--output", required=True, help="Where to save the JSON summary")
    parser.add_argument("--frame-skip", type=int, default=5, help="Process every Nth frame")
    parser.add_argument("--model", default="yolo11s.pt")
    parser.add_argument("--conf", type=float, default=0.4)
    parser.add_argument("--reid-model", default="models/osnet_x1_0.onnx")
    parser.add_argument("--no-reid", action="store_true", help="Skip appearance features")
    parser.add_argument("--mock", action="store_true", help="Use dummy detector (no model download)")
    parser.add_argument("--log-level", default="INFO")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    run(args)


if __name__ == "__main__":
    main()
