from typing import List, Optional, Sequence, Tuple


class ProcessState:
    RUN = "Run"
    SLEEP = "Sleep"
    IDLE = "Idle"
    ZOMBIE = "Zombie"
    STOP = "Stop"
    UNKNOWN = "Unknown"


class ProcessInfo:
    def __init__(self, *,
                 pid: int,
                 name: str,
                 cpu_usage: float = 0.0,
                 memory: int = 0,
                 parent_pid: Optional[int] = None,
                 status: str = ProcessState.UNKNOWN,
                 ):
        self.pid = pid
        self.parent_pid = parent_pid
        self.name = name
        self.cpu_usage = cpu_usage
        self.memory = memory
        self.status = status

    def __repr__(self):
        return f"ProcessInfo(pid={self.pid}, name={self.name!r}, cpu={self.cpu_usage:.1f})"


class ServiceSignature:
    def __init__(self, name: str, patterns: Sequence[str]):
        self.name = name
        self.patterns = tuple(patterns)

    def matches(self, process_name: str) -> bool:
        lower = process_name.lower()
        return any(p.lower() in lower for p in self.patterns)


class DetectedService:
    def __init__(self, name: str, detected: bool = False,
                 version: Optional[str] = None, pid: Optional[int] = None):
        self.name = name
        self.detected = detected
        self.version = version
        self.pid = pid

    def __repr__(self):
        return f"DetectedService({self.name!r}, detected={self.detected}, pid={self.pid})"


OLLAMA = "Ollama"

SERVICE_SIGNATURES: Tuple[ServiceSignature, ...] = (
    ServiceSignature(OLLAMA, ["ollama"]),
    ServiceSignature("LM Studio", ["LM Studio", "lmstudio"]),
    ServiceSignature("llama.cpp", ["llama-server", "llama-cli"]),
    ServiceSignature("Claude Code", ["claude"]),
    ServiceSignature("MLX", ["mlx"]),
    ServiceSignature("vLLM", ["vllm"]),
    ServiceSignature("Open WebUI", ["open-webui"]),
    ServiceSignature("GPT4All", ["gpt4all"]),
    ServiceSignature("Whisper", ["whisper"]),
    ServiceSignature("Stable Diffusion", ["stable-diffusion", "comfy"]),
)

# Broader than the signatures: bare "llama" catches the various llama.cpp builds
AI_PROCESS_PATTERNS: Tuple[str, ...] = (
    "ollama",
    "lm studio",
    "lmstudio",
    "llama-server",
    "llama-cli",
    "llama",
    "claude",
    "mlx",
    "vllm",
    "open-webui",
    "gpt4all",
    "whisper",
    "stable-diffusion",
    "comfy",
)


def detect_services(processes: Sequence[ProcessInfo],
                    ollama_version: Optional[str] = None) -> List[DetectedService]:
    services = []
    for sig in SERVICE_SIGNATURES:
        match = next((p for p in processes if sig.matches(p.name)), None)
        services.append(DetectedService(
            sig.name,
            detected=match is not None,
            version=ollama_version if sig.name == OLLAMA else None,
            pid=match.pid if match else None,
        ))
    return services


def is_ai_process(name: str) -> bool:
    lower = name.lower()
    return any(p in lower for p in AI_PROCESS_PATTERNS)


def filter_ai_processes(processes: Sequence[ProcessInfo]) -> List[ProcessInfo]:
    found = [p for p in processes if is_ai_process(p.name)]
    found.sort(key=lambda p: p.cpu_usage, reverse=True)
    return found


def aggregate_usage(processes: Sequence[ProcessInfo]) -> Tuple[float, int]:
    cpu = sum(p.cpu_usage for p in processes)
    mem = sum(p.memory for p in processes)
    return cpu, mem
