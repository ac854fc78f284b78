from __future__ import annotations

import json
import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path


class TestCrawlCommandWritesLog(unittest.TestCase):
    def test_crawl_creates_log_on_config_error(self) -> None:
        repo_root = Path(__file__).resolve().parents[1]

        with tempfile.TemporaryDirectory() as td:
            out_dir = Path(td) / "out"
            out_dir.mkdir(parents=True, exist_ok=True)

            missing_cfg = Path(td) / "missing_config.yaml"

            env = dict(os.environ)
            env["MASTODON_TOKEN"] = "dummy"

            existing_pp = env.get("PYTHONPATH", "")
            env["PYTHONPATH"] = (
                f"{repo_root}{os.pathsep}{existing_pp}" if existing_pp else str(repo_root)
            )

            proc = subprocess.run(
                [
                    sys.executable,
                    "-m",
                    "timeline_fetch",
                    "crawl",
                    "--config",
                    str(missing_cfg),
                    "--out",
                    str(out_dir),
                    "--offline",
                ],
                cwd=repo_root,
                env=env,
                capture_output=True,
                text=True,
            )

            self.assertEqual(proc.returncode, 2, msg=proc.stderr)
            self.assertIn("Config file not found", proc.stderr)

            log_path = out_dir / "crawl.log"
            self.assertTrue(log_path.exists())

            lines = [
                ln.strip()
                for ln in log_path.read_text(encoding="utf-8").splitlines()
                if ln.strip()
            ]
            self.assertGreaterEqual(len(lines), 1)

            records = [json.loads(ln) for ln in lines]
            events = [r.get("event") for r in records]

            self.assertIn("crawl_command_started", events)
            self.assertIn("crawl_command_failed", events)

            failed = records[events.index("crawl_command_failed")]
            self.assertEqual(failed["level"], "ERROR")
            self.assertEqual(failed["data"]["error"]["type"], "ConfigError")

    def test_successful_crawl_logs_pages(self) -> None:
        repo_root = Path(__file__).resolve().parents[1]

        with tempfile.TemporaryDirectory() as td:
            cfg_path = Path(td) / "config.yaml"
            cfg_path.write_text("{}", encoding="utf-8")
            out_dir = Path(td) / "out"

            env = dict(os.environ)
            env["MASTODON_TOKEN"] = "dummy"
            existing_pp = env.get("PYTHONPATH", "")
            env["PYTHONPATH"] = (
                f"{repo_root}{os.pathsep}{existing_pp}" if existing_pp else str(repo_root)
            )

            proc = subprocess.run(
                [
                    sys.executable,
                    "-m",
                    "timeline_fetch",
                    "crawl",
                    "--config",
                    str(cfg_path),
                    "--out",
                    str(out_dir),
                    "--offline",
                ],
                cwd=repo_root,
                env=env,
                capture_output=True,
                text=True,
            )
            self.assertEqual(proc.returncode, 0, msg=proc.stderr)

            records = [
                json.loads(ln)
                for ln in (out_dir / "crawl.log").read_text(encoding="utf-8").splitlines()
                if ln.strip()
            ]
            events = [r["event"] for r in records]
            for expected in ("crawl_command_started", "config_loaded", "crawl_started", "crawl_page", "crawl_stopped", "crawl_command_completed"):
                self.assertIn(expected, events)

            session_ids = {r["session_id"] for r in records}
            self.assertEqual(len(session_ids), 1)


if __name__ == "__main__":
    unittest.main()
