"""Memory and task tools: titled markdown records under memory/ and tasks/."""

from datetime import datetime
from typing import Callable

from burrow.store import SandboxStore
from burrow.tools.registry import Tool


def title_to_filename(title: str) -> str:
    """``"Buy milk/eggs"`` -> ``"buy_milk-eggs.md"``."""
    slug = str(title).strip().replace(" ", "_").replace("/", "-").lower()
    return f"{slug or 'untitled'}.md"


def format_created_date(moment: datetime) -> str:
    return f"{moment:%b} {moment.day}, {moment:%Y} at {moment:%H:%M}"


class _RecordTool(Tool):
    directory: str = ""

    def __init__(self, store: SandboxStore, clock: Callable[[], datetime] = datetime.now):
        super().__init__(store)
        self.clock = clock

    def record_path(self, title: str) -> str:
        return f"{self.directory}/{title_to_filename(title)}"


class CreateMemoryTool(_RecordTool):
    """Save a titled note in memory/."""

    name = "create_memory"
    directory = "memory"

    def run(self, title: str, content: str, **kwargs: str) -> str:
        document = (
            f"# {title}\n"
            "\n"
            f"*Created: {format_created_date(self.clock())}*\n"
            "\n"
            f"{content}\n"
        )
        return self.store.create(self.record_path(title), document)


class CreateTaskTool(_RecordTool):
    """Save a checklist task in tasks/, with optional due date and details."""

    name = "create_task"
    directory = "tasks"

    def run(self, title: str, due: str = "", details: str = "", **kwargs: str) -> str:
        lines = [f"# {title}", "", f"*Created: {format_created_date(self.clock())}*"]
        if due.strip():
            lines.append(f"*Due: {due.strip()}*")
        lines.extend(["", f"- [ ] {title}"])
        if details.strip():
            lines.extend(["", "## Details", "", details.strip()])
        return self.store.create(self.record_path(title), "\n".join(lines) + "\n")
