import json
import os
import subprocess
import sys
from pathlib import Path

import cv2
import numpy as np
import pytest

from reidwatch.tools import run_on_video


def _make_dummy_video(path: Path, frames: int = 10, size=(64, 64)):
    fourcc = cv2.VideoWriter_fourcc(*"MJPG")
    writer = cv2.VideoWriter(str(path), fourcc, 5.0, size)
    if not writer.isOpened():
        pytest.skip("OpenCV build cannot write MJPG video on this platform")
    for i in range(frames):
        frame = np.zeros((size[1], size[0], 3), dtype=np.uint8)
        cv2.putText(frame, str(i), (5, 32), cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255, 255, 255), 1)
        writer.write(frame)
    writer.release()

    cap = cv2.VideoCapture(str(path))
    ok, frame = cap.read()
    cap.release()
    if not ok or frame is None:
        pytest.skip("OpenCV backend cannot read generated video on this platform")


def test_main_writes_summary(tmp_path: Path):
    video_path = tmp_path / "dummy.avi"
    out_path = tmp_path / "nested" / "out.json"
    _make_dummy_video(video_path)

    run_on_video.main(
        ["--input", str(video_path), "--output", str(out_path), "--frame-skip", "2", "--mock"]
    )

    data = json.loads(out_path.read_text(encoding="utf-8"))
    assert data["status"] == "completed"
    assert data["file_name"] == "dummy.avi"
    assert data["processed_frames"] == 5
    assert data["unique_persons"] == 0
    assert data["timelines"] == []


def test_missing_input_exits(tmp_path: Path):
    with pytest.raises(SystemExit, match="Processing failed"):
        run_on_video.main(
            ["--input", str(tmp_path / "absent.avi"), "--output", str(tmp_path / "out.json"), "--mock"]
        )
    assert not (tmp_path / "out.json").exists()


def test_parser_defaults():
    args = run_on_video.build_parser().parse_args(["--input", "a.mp4", "--output", "b.json"])
    assert args.frame_skip == 5
    assert args.conf == 0.4
    assert not args.mock and not args.no_reid


def test_run_on_video_module_entrypoint(tmp_path: Path):
    video_path = tmp_path / "dummy.avi"
    out_path = tmp_path / "out.json"
    _make_dummy_video(video_path, frames=4)

    env = os.environ.copy()
    env["PYTHONPATH"] = env.get("PYTHONPATH", ".") + os.pathsep + str(Path(__file__).resolve().parents[1])

    cmd = [
        sys.executable,
        "-m",
        "reidwatch.tools.run_on_video",
        "--input",
        str(video_path),
        "--output",
        str(out_path),
        "--frame-skip",
        "1",
        "--mock",
    ]
    subprocess.run(cmd, check=True, env=env)
    assert json.loads(out_path.read_text(encoding="utf-8"))["processed_frames"] == 4
