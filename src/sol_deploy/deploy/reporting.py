"""On-disk run reports.

Every pipeline run started with ``--report-dir`` (or
``SOL_DEPLOY_REPORT_DIR``) gets its own ``{report_dir}/{run_id}/``
directory, so a cron job can keep a history of deploys and a failed run
can be inspected after the terminal scrollback is gone.

Output Structure::

    {report_dir}/{run_id}/
    ├── summary.json            PipelineRun as JSON
    └── steps/
        ├── start-containers.stderr.log
        └── start-containers.stdout.log

Only failed steps get per-step files; successful output is already in
``summary.json`` (truncated) and in the logs.
"""

from __future__ import annotations

from pathlib import Path

from sol_deploy.deploy.results import PipelineRun
from sol_deploy.logging import get_logger

logger = get_logger(__name__)


class RunReporter:
    """Writes PipelineRun reports under *report_dir*.

    Parameters
    ----------
    report_dir
        Base directory; created on first write.
    """

    def __init__(self, report_dir: Path) -> None:
        self.report_dir = report_dir

    def run_dir(self, run: PipelineRun) -> Path:
        d = self.report_dir / run.run_id
        d.mkdir(parents=True, exist_ok=True)
        return d

    def steps_dir(self, run: PipelineRun) -> Path:
        d = self.run_dir(run) / "steps"
        d.mkdir(parents=True, exist_ok=True)
        return d

    def write(self, run: PipelineRun) -> Path:
        """Write the summary and failed-step output; return the summary path.

        Returns
        -------
        Path
            Path to ``summary.json``.
        """
        summary = self.run_dir(run) / "summary.json"
        summary.write_text(run.model_dump_json(indent=2), encoding="utf-8")

        for result in run.failed_steps:
            for suffix, text in (("stdout", result.output), ("stderr", result.stderr)):
                if text:
                    path = self.steps_dir(run) / f"{result.step_name}.{suffix}.log"
                    path.write_text(text, encoding="utf-8")

        logger.info("report.written", path=str(summary), outcome=run.outcome.value)
        return summary

    def latest(self) -> PipelineRun | None:
        """Most recently written run, if any."""
        if not self.report_dir.is_dir():
            return None
        summaries = sorted(
            self.report_dir.glob("*/summary.json"),
            key=lambda p: p.stat().st_mtime,
        )
        if not summaries:
            return None
        return PipelineRun.model_validate_json(summaries[-1].read_text(encoding="utf-8"))
