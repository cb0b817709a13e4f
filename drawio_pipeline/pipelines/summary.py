import logging
from pathlib import Path
from typing import List, Optional

from ..changelog import ChangelogEntry
from ..config import AppConfig
from .processing import RunSummary

logger = logging.getLogger(__name__)

RECENT_CHANGES = 5


def log_summary(summary: RunSummary, config: AppConfig) -> None:
    lines = [
        "=" * 64,
        "                    PROCESSING SUMMARY",
        "=" * 64,
        f"📊 Files processed: {len(summary.processed)}",
        f"❌ Files failed: {len(summary.failed)}",
        f"⏭ Files skipped: {len(summary.skipped)}",
        f"📁 PNG files directory: {config.pipeline.png_dir}",
        f"📋 Changelog: {config.pipeline.changelog_file}",
    ]
    if summary.processed:
        lines.append("✅ Successfully processed:")
        lines.extend(f"   - {o.name}" for o in summary.processed)
    if summary.failed:
        lines.append("❌ Failed to process:")
        lines.extend(f"   - {o.name}: {'; '.join(o.errors)}" for o in summary.failed)
    if summary.removed_duplicates:
        lines.append("🧹 Removed duplicates:")
        lines.extend(f"   - {p.name}" for p in summary.removed_duplicates)
    lines.append("=" * 64)
    for line in lines:
        logger.info(line)


def _count(directory: Path, pattern: str) -> int:
    if not directory.is_dir():
        return 0
    return sum(1 for p in directory.rglob(pattern) if p.is_file())


def _cell(value: str) -> str:
    return value.replace("|", "\\|")


def render_markdown(
    summary: RunSummary,
    config: AppConfig,
    recent: Optional[List[ChangelogEntry]] = None,
) -> str:
    settings = config.pipeline
    status = "success" if summary.success else "failure"
    out = ["## 📊 Draw.io Processing Summary", ""]

    out += [
        "### 📈 Statistics",
        f"- **Total Draw.io files**: {_count(settings.drawio_dir, '*' + settings.diagram_extension)}",
        f"- **Total PNG files**: {_count(settings.png_dir, '*.png')}",
        f"- **Processed this run**: {len(summary.processed)}",
        f"- **Failed this run**: {len(summary.failed)}",
        f"- **Processing status**: {status}",
        "",
    ]

    if summary.outcomes:
        out += ["### 🔄 This Run", "| Diagram | Version | Action |", "|---------|---------|--------|"]
        for outcome in summary.outcomes:
            out.append(f"| {_cell(outcome.name)} | {outcome.version or '-'} | {outcome.status.value} |")
        out.append("")

    if recent:
        out += ["### 📋 Recent Changes", "| Diagram | Version | Action |", "|---------|---------|--------|"]
        for entry in recent:
            out.append(f"| {_cell(entry.diagram)} | {entry.version} | {_cell(entry.action)} |")
        out.append("")

    out += [
        "### ⚙️ Configuration",
        f"- **PNG Scale**: {settings.png_scale}",
        f"- **PNG Quality**: {settings.png_quality}",
        f"- **Changelog**: {settings.changelog_file}",
        "",
    ]
    return "\n".join(out)


def write_step_summary(markdown: str, config: AppConfig) -> bool:
    """Append to $GITHUB_STEP_SUMMARY when running under GitHub Actions."""
    target = config.ci.step_summary
    if not target:
        return False
    try:
        with open(target, "a", encoding="utf-8") as f:
            f.write(markdown + "\n")
    except OSError as e:
        logger.warning(f"Could not write step summary to {target}: {e}")
        return False
    return True
