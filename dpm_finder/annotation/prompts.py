"""
Prompt construction for ingestion-rate explanations.
"""

from __future__ import annotations

from dataclasses import dataclass

from dpm_finder.fleet.resolver import CollectorConfig

PROMPT_TEMPLATE = (
    'Explain the Prometheus metric "{metric}".\n\n'
    "This metric is being collected by a Grafana Alloy collector with the "
    "following configuration:\n\n"
    "\n{config}\n"
    "\n\n"
    "Please analyze the configuration provided and highlight any potential "
    "contributors to datapoints per minute that you can observe."
)


def build_prompt(metric: str, config_content: str) -> str:
    """Deterministic prompt embedding the metric name and raw config text."""
    if not metric:
        raise ValueError("metric must not be empty")
    return PROMPT_TEMPLATE.format(metric=metric, config=config_content)


def accumulate(total: str, delta: str) -> str:
    """Running total after one delta."""
    return total + delta


@dataclass(frozen=True)
class AnnotationRequest:
    """One analysis: the metric, its collector config and the prompt sent."""

    metric: str
    config: CollectorConfig
    prompt_text: str

    @classmethod
    def build(cls, metric: str, config: CollectorConfig) -> "AnnotationRequest":
        return cls(metric=metric, config=config, prompt_text=build_prompt(metric, config.content))
