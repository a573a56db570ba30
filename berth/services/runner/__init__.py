"""Ad-hoc single-file runner."""

from berth.services.runner.plan import RunPlan, plan_for, sanitize_inputs
from berth.services.runner.runner import FileRunner, RunRecord, RunResult

__all__ = ["FileRunner", "RunPlan", "RunRecord", "RunResult", "plan_for", "sanitize_inputs"]
