"""Matrix expansion: declared targets to concrete, gated matrix entries."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from .conditions import ConditionEvaluator, Predicate
from .config import BuildTarget, MatrixConfig, PlatformFamily
from .context import TriggerContext
from .errors import ConfigurationError
from .packaging import render_suffix, slugify

logger = logging.getLogger(__name__)

DEFAULT_POOL = "default"


@dataclass(frozen=True)
class RunnerTable:
    """Owner -> runner-pool lookup; owners without an entry use the default pool."""

    pools: Mapping[str, Mapping[PlatformFamily, Sequence[str]]] = field(default_factory=dict)

    def select(self, owner: str, platform: PlatformFamily) -> List[str]:
        pool = self.pools.get(owner)
        if pool is None or platform not in pool:
            pool = self.pools.get(DEFAULT_POOL, {})
        labels = pool.get(platform)
        if not labels:
            raise ConfigurationError(
                f"No runner configured for platform '{platform.value}' (owner '{owner}')."
            )
        return list(labels)


@dataclass(frozen=True)
class MatrixEntry:
    target: BuildTarget
    runner: tuple[str, ...]
    suffix: str

    @property
    def platform(self) -> PlatformFamily:
        return self.target.platform

    @property
    def job_id(self) -> str:
        return slugify(self.suffix)

    def predicate_fields(self) -> Dict[str, object]:
        return {
            "platform": self.target.platform.value,
            "target": self.target.target,
            "profile": self.target.profile or "",
            "cross_compile": self.target.cross_compile,
        }

    def to_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "platform": self.target.platform.value,
            "target": self.target.target,
            "profile": self.target.profile,
            "runner": list(self.runner),
            "suffix": self.suffix,
        }


class MatrixExpander:
    def __init__(
        self,
        *,
        runners: RunnerTable,
        extended_platforms: Sequence[PlatformFamily] = (PlatformFamily.MACOS, PlatformFamily.WINDOWS),
        evaluator: Optional[ConditionEvaluator] = None,
    ) -> None:
        self.runners = runners
        self.extended_platforms = frozenset(extended_platforms)
        self.evaluator = evaluator or ConditionEvaluator()

    @classmethod
    def from_config(cls, config: MatrixConfig, evaluator: Optional[ConditionEvaluator] = None) -> "MatrixExpander":
        return cls(
            runners=RunnerTable(config.runner_pools),
            extended_platforms=config.extended_platforms,
            evaluator=evaluator,
        )

    def expand(
        self,
        targets: Sequence[BuildTarget],
        exclude_rules: Sequence[Predicate],
        run_scope: Predicate,
        context: TriggerContext,
    ) -> List[MatrixEntry]:
        """Return the entries to run, in declaration order.

        Extended-platform targets are dropped when ``run_scope`` is false for
        the context; any entry matching an exclude rule is dropped as well.
        """

        seen: set[tuple[str, str, str]] = set()
        for target in targets:
            if target.identity in seen:
                raise ConfigurationError(
                    "Duplicate matrix entry for platform={0} target={1} profile={2}.".format(*target.identity)
                )
            seen.add(target.identity)

        include_extended = self.evaluator.evaluate(run_scope, context)
        entries: List[MatrixEntry] = []
        for target in targets:
            if target.platform in self.extended_platforms and not include_extended:
                logger.debug("Skipping %s/%s: extended platforms not requested", target.platform.value, target.target)
                continue
            entry = MatrixEntry(
                target=target,
                runner=tuple(self.runners.select(context.repository_owner, target.platform)),
                suffix=render_suffix(target, context.ref_name),
            )
            fields = entry.predicate_fields()
            if any(self.evaluator.evaluate(rule, context, fields) for rule in exclude_rules):
                logger.debug("Skipping %s: matched exclude rule", entry.job_id)
                continue
            entries.append(entry)
        return entries


def expand_config(config: MatrixConfig, context: TriggerContext, evaluator: Optional[ConditionEvaluator] = None) -> List[MatrixEntry]:
    context = context.with_input_defaults(config.declared_inputs())
    expander = MatrixExpander.from_config(config, evaluator)
    return expander.expand(config.targets, config.exclude, config.run_scope_predicate(), context)


__all__ = ["MatrixEntry", "MatrixExpander", "RunnerTable", "expand_config"]
