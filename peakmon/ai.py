"""Detection of locally running AI services from the process table.

Nothing here talks to the services themselves; a service counts as running
when one of its known process names shows up in the latest process scan.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from peakmon.metrics import ProcessInfo

# Display name -> lowercase substrings of the process name
SERVICE_PATTERNS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Ollama", ("ollama",)),
    ("LM Studio", ("lm studio", "lmstudio")),
    ("llama.cpp", ("llama-server", "llama-cli")),
    ("Claude Code", ("claude",)),
    ("MLX", ("mlx",)),
    ("vLLM", ("vllm",)),
    ("Open WebUI", ("open-webui",)),
    ("GPT4All", ("gpt4all",)),
    ("Whisper", ("whisper",)),
    ("Stable Diffusion", ("stable-diffusion", "comfy")),
)

# Broader than the service list: any llama build counts as AI work
AI_PROCESS_PATTERNS: tuple[str, ...] = tuple(
    dict.fromkeys(
        [pat for _, pats in SERVICE_PATTERNS for pat in pats] + ["llama"]
    )
)


@dataclass(frozen=True, slots=True)
class AiService:
    name: str
    detected: bool = False
    pid: int | None = None


@dataclass(frozen=True, slots=True)
class AiStats:
    services: tuple[AiService, ...] = ()
    processes: tuple[ProcessInfo, ...] = ()
    cpu_percent: float = 0.0
    memory_rss: int = 0

    @property
    def detected(self) -> tuple[AiService, ...]:
        return tuple(s for s in self.services if s.detected)


def _matches(name: str, patterns: Iterable[str]) -> bool:
    lowered = name.lower()
    return any(pat in lowered for pat in patterns)


def detect_services(processes: Sequence[ProcessInfo]) -> tuple[AiService, ...]:
    """One entry per known service, with the pid of the first matching process."""
    services: list[AiService] = []
    for name, patterns in SERVICE_PATTERNS:
        match = next((p for p in processes if _matches(p.name, patterns)), None)
        services.append(
            AiService(name=name, detected=match is not None, pid=match.pid if match else None)
        )
    return tuple(services)


def ai_processes(processes: Sequence[ProcessInfo]) -> tuple[ProcessInfo, ...]:
    """Processes whose name looks like AI work, busiest first."""
    found = [p for p in processes if _matches(p.name, AI_PROCESS_PATTERNS)]
    found.sort(key=lambda p: p.cpu_percent, reverse=True)
    return tuple(found)


def summarize(processes: Sequence[ProcessInfo]) -> AiStats:
    procs = ai_processes(processes)
    return AiStats(
        services=detect_services(processes),
        processes=procs,
        cpu_percent=sum(p.cpu_percent for p in procs),
        memory_rss=sum(p.memory_rss for p in procs),
    )
