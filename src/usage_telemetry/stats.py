"""Session-level token statistics: calculation and base + delta merging."""

from dataclasses import asdict, dataclass, field

from usage_telemetry import catalog
from usage_telemetry.records import MetadataRecord, StepRecord, UsageFields


@dataclass
class ModelStats:
    """Accumulated usage for one display name."""

    display_name: str
    calls: int = 0
    input: int = 0
    output: int = 0
    cache_read: int = 0

    def add(self, usage: UsageFields) -> None:
        self.calls += 1
        self.input += usage.input_tokens
        self.output += usage.output_tokens
        self.cache_read += usage.cache_read_tokens


@dataclass
class AggregatedStats:
    """Cumulative totals for one session."""

    total_calls: int = 0
    total_input: int = 0
    total_output: int = 0
    total_cache_read: int = 0
    last_context_size: int = 0
    model_breakdown: list[ModelStats] = field(default_factory=list)

    def add(self, usage: UsageFields) -> None:
        self.total_calls += 1
        self.total_input += usage.input_tokens
        self.total_output += usage.output_tokens
        self.total_cache_read += usage.cache_read_tokens

    @property
    def cache_efficiency(self) -> float:
        """Percent of observed input tokens served from cache (one decimal)."""
        observed = self.total_input + self.total_cache_read
        if observed == 0:
            return 0.0
        return round(self.total_cache_read / observed * 100, 1)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["cache_efficiency"] = self.cache_efficiency
        return data


def empty_stats() -> AggregatedStats:
    return AggregatedStats()


def _sorted_breakdown(models) -> list[ModelStats]:
    # Stable sort: unknown models keep first-seen order at the end
    return sorted(models, key=lambda m: catalog.order(m.display_name))


def _accumulate(models: dict[str, ModelStats], total: AggregatedStats, usage: UsageFields):
    name = catalog.display_name(usage.model)
    if name not in models:
        models[name] = ModelStats(display_name=name)
    models[name].add(usage)
    total.add(usage)


def calculate(
    metadata: list[MetadataRecord],
    steps: list[StepRecord] | None = None,
) -> AggregatedStats:
    """Aggregate metadata and step records into per-model and total statistics.

    Every metadata record counts as one call. Steps contribute only when they
    carry a usage object, regardless of step type. ``last_context_size`` is
    the context estimate of the last metadata record.
    """
    models: dict[str, ModelStats] = {}
    total = empty_stats()

    for record in metadata:
        _accumulate(models, total, record.usage)

    if metadata:
        total.last_context_size = metadata[-1].context_size

    for step in steps or []:
        if step.usage is not None:
            _accumulate(models, total, step.usage)

    total.model_breakdown = _sorted_breakdown(models.values())
    return total


def merge(base: AggregatedStats, delta: AggregatedStats) -> AggregatedStats:
    """Merge delta statistics into base statistics, returning a new object.

    The delta's context size wins only when the delta saw any calls or input.
    """
    merged = AggregatedStats(
        total_calls=base.total_calls + delta.total_calls,
        total_input=base.total_input + delta.total_input,
        total_output=base.total_output + delta.total_output,
        total_cache_read=base.total_cache_read + delta.total_cache_read,
    )

    if delta.total_input > 0 or delta.total_calls > 0:
        merged.last_context_size = delta.last_context_size
    else:
        merged.last_context_size = base.last_context_size

    models: dict[str, ModelStats] = {}
    for m in [*base.model_breakdown, *delta.model_breakdown]:
        existing = models.get(m.display_name)
        if existing is None:
            models[m.display_name] = ModelStats(
                display_name=m.display_name,
                calls=m.calls,
                input=m.input,
                output=m.output,
                cache_read=m.cache_read,
            )
        else:
            existing.calls += m.calls
            existing.input += m.input
            existing.output += m.output
            existing.cache_read += m.cache_read

    merged.model_breakdown = _sorted_breakdown(models.values())
    return merged
