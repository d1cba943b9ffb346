"""Exception hierarchy shared by the store, pipeline and scheduler."""


class OrchestratorError(Exception):
    pass


class NotFoundError(OrchestratorError, ValueError):
    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class InvalidTransitionError(OrchestratorError):
    def __init__(self, entity_id: str, old: str, new: str):
        super().__init__(f"Invalid status transition for {entity_id}: {old} -> {new}")
        self.entity_id = entity_id
        self.old = old
        self.new = new


# ── Pipeline ──────────────────────────────────────────────────────────


class PipelineError(OrchestratorError):
    pass


class AgentFailedError(PipelineError):
    def __init__(self, agent_type: str, detail: str):
        super().__init__(f"{agent_type} agent failed: {detail}")
        self.agent_type = agent_type
        self.detail = detail


class CallBudgetExceeded(PipelineError):
    def __init__(self, limit: int):
        super().__init__(f"Agent call limit reached ({limit}). Manual intervention required.")
        self.limit = limit


class LoopExhaustedError(PipelineError):
    def __init__(self, loop: str, limit: int):
        super().__init__(f"{loop.capitalize()} loop limit reached ({limit}). Manual intervention required.")
        self.loop = loop
        self.limit = limit


# ── Scheduler ─────────────────────────────────────────────────────────


class SchedulerError(OrchestratorError):
    pass


class CircularDependencyError(SchedulerError):
    def __init__(self, stuck: list[str]):
        super().__init__(f"Circular or unsatisfiable dependencies: {', '.join(stuck)}")
        self.stuck = stuck


class JobsFailedError(SchedulerError):
    def __init__(self, summary):
        parts = [f"{len(summary.failed)} failed"]
        if summary.skipped:
            parts.append(f"{len(summary.skipped)} skipped")
        if summary.cancelled:
            parts.append(f"{len(summary.cancelled)} cancelled")
        super().__init__(f"{', '.join(parts)} of {summary.total} jobs")
        self.summary = summary
