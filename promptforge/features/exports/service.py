"""
promptforge/features/exports/service.py

Export bundle generation.

Renders a prompt into the formats the caller's plan allows (txt, md, json,
pdf), adds telemetry, a manifest and a checksum file, and for enterprise
packs everything into a ZIP. Format filtering happens first; nothing is
rendered for a format outside the plan.
"""

import hashlib
import io
import json
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union
from xml.sax.saxutils import escape

from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, Preformatted, SimpleDocTemplate, Spacer

from promptforge.core.metrics import exports_total
from promptforge.features.entitlements.plans import (
    ExportFormat,
    PlanTier,
    allowed_formats,
    filter_requested_formats,
    parse_plan,
)
from promptforge.features.exports.models import PromptDocument, PromptEditResult, PromptTestResult

logger = logging.getLogger(__name__)

BRANDING = {
    "product": "PROMPTFORGE™",
    "version": "v3.0.0",
    "company": "PromptForge Inc.",
    "website": "https://promptforge.ai",
}

LICENSE_NOTICE = (
    "© PromptForge Inc. All rights reserved. This prompt was generated using PROMPTFORGE™ v3.0. "
    "Commercial use requires appropriate licensing. See https://promptforge.ai/licensing for details."
)

BUNDLE_VERSION = "3.0.0"

SEVEN_DIMENSIONS = ("domain", "scale", "urgency", "complexity", "resources", "application")

TEXT_MIME = "text/plain; charset=utf-8"
MARKDOWN_MIME = "text/markdown; charset=utf-8"
JSON_MIME = "application/json; charset=utf-8"
PDF_MIME = "application/pdf"
ZIP_MIME = "application/zip"


@dataclass(frozen=True)
class ExportArtifact:
    filename: str
    content: bytes
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.content).hexdigest()

    @property
    def is_text(self) -> bool:
        return not self.mime_type.startswith(("application/pdf", "application/zip"))


@dataclass
class ExportBundle:
    plan: PlanTier
    formats: List[ExportFormat]
    artifacts: List[ExportArtifact]
    manifest: Dict[str, Any]
    checksum: str
    zip_bytes: Optional[bytes] = None
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def artifact(self, filename: str) -> Optional[ExportArtifact]:
        for artifact in self.artifacts:
            if artifact.filename == filename:
                return artifact
        return None


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def _dimension(prompt: PromptDocument, key: str, default: str = "N/A") -> str:
    value = prompt.config.get(key)
    return str(value) if value not in (None, "") else default


def compute_checksum(artifacts: Iterable[ExportArtifact]) -> str:
    """SHA-256 over name, content, MIME type and size of each artifact, in filename order."""
    digest = hashlib.sha256()
    for artifact in sorted(artifacts, key=lambda a: a.filename):
        digest.update(artifact.filename.encode("utf-8"))
        digest.update(artifact.content)
        digest.update(artifact.mime_type.encode("utf-8"))
        digest.update(str(artifact.size).encode("utf-8"))
    return digest.hexdigest()


class ExportService:
    def __init__(self, now_fn=None):
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))

    def build_bundle(
        self,
        plan: Union[PlanTier, str, None],
        requested_formats: Iterable[Union[ExportFormat, str]],
        prompt: PromptDocument,
        test_results: Optional[List[PromptTestResult]] = None,
        edit_results: Optional[List[PromptEditResult]] = None,
    ) -> ExportBundle:
        """Filter ``requested_formats`` by plan, then render the survivors.

        Raises NoEntitledFormatsError before any rendering when nothing is allowed.
        """
        tier = parse_plan(plan)
        formats = filter_requested_formats(tier, requested_formats)
        tests = list(test_results or [])
        edits = list(edit_results or [])
        now = self._now_fn()

        renderers = {
            ExportFormat.TXT: self.render_txt,
            ExportFormat.MD: self.render_md,
            ExportFormat.JSON: self.render_json,
            ExportFormat.PDF: self.render_pdf,
        }
        artifacts: List[ExportArtifact] = []
        for fmt in self.formats_to_render(tier, formats):
            artifacts.append(renderers[fmt](prompt, tests, edits, now))

        artifacts.append(self.render_telemetry(prompt, tests, edits, tier, now))
        checksum = compute_checksum(artifacts)

        manifest = self.build_manifest(prompt, tier, artifacts, checksum, tests, edits, now)
        artifacts.append(ExportArtifact(
            "manifest.json",
            json.dumps(manifest, indent=2, ensure_ascii=False).encode("utf-8"),
            JSON_MIME,
        ))
        artifacts.append(self.render_checksum_file(checksum, now))

        zip_bytes = self.build_zip(artifacts) if ExportFormat.BUNDLE in formats else None

        for fmt in formats:
            exports_total.inc(labels={"plan": tier.value, "format": fmt.value})
        logger.info(
            "export.bundle_built",
            extra={
                "plan": tier.value,
                "event_type": "export.bundle_built",
                "formats": [f.value for f in formats],
                "artifact_count": len(artifacts),
            },
        )
        return ExportBundle(
            plan=tier,
            formats=formats,
            artifacts=artifacts,
            manifest=manifest,
            checksum=checksum,
            zip_bytes=zip_bytes,
            generated_at=now,
        )

    @staticmethod
    def formats_to_render(tier: PlanTier, formats: List[ExportFormat]) -> List[ExportFormat]:
        """Single-file formats to render; a bundle carries every one the plan allows."""
        if ExportFormat.BUNDLE in formats:
            entitled = allowed_formats(tier)
            return [f for f in ExportFormat if f in entitled and f != ExportFormat.BUNDLE]
        return [f for f in formats if f != ExportFormat.BUNDLE]

    # Renderers

    def _header_lines(self, prompt: PromptDocument, now: datetime) -> List[str]:
        generated = prompt.generated_at or now
        return [
            f"Module: {prompt.module_id}",
            f"Vector: {prompt.vector or 'N/A'}",
            f"Score: {prompt.score:.2f}/100",
            f"Session: {prompt.session_hash}",
            f"Generated: {_iso(generated)}",
        ]

    def render_txt(self, prompt, tests, edits, now) -> ExportArtifact:
        lines = [
            f"{BRANDING['product']} {BRANDING['version']}",
            BRANDING["company"],
            "=" * 50,
            "",
            "PROMPT SPECIFICATION",
            *self._header_lines(prompt, now),
            "",
            "SEVEN DIMENSIONS:",
            *[f"{key.capitalize()}: {_dimension(prompt, key)}" for key in SEVEN_DIMENSIONS],
            "",
            "PROMPT CONTENT:",
            prompt.content,
            "",
            "LICENSE NOTICE:",
            LICENSE_NOTICE,
        ]
        if tests:
            lines += ["", "TEST RESULTS:", "-" * 30]
            for index, result in enumerate(tests, start=1):
                lines.append(f"{index}. {result.test_name}: {'PASS' if result.passed else 'FAIL'}")
                lines.append(f"   Score: {result.score:.2f}/100")
                lines.append(f"   Details: {result.details}")
        if edits:
            lines += ["", "EDIT HISTORY:", "-" * 30]
            for index, edit in enumerate(edits, start=1):
                lines.append(f"{index}. {edit.edit_type}: {edit.confidence:.2f}%")
                lines.append(f"   Changes: {edit.changes}")
        return ExportArtifact("prompt.txt", ("\n".join(lines) + "\n").encode("utf-8"), TEXT_MIME)

    def render_md(self, prompt, tests, edits, now) -> ExportArtifact:
        generated = prompt.generated_at or now
        lines = [
            f"# {BRANDING['product']} {BRANDING['version']}",
            "",
            f"**Company:** {BRANDING['company']}  ",
            f"**Website:** {BRANDING['website']}",
            "",
            "## Prompt Specification",
            "",
            "| Field | Value |",
            "|-------|-------|",
            f"| Module | {prompt.module_id} |",
            f"| Vector | {prompt.vector or 'N/A'} |",
            f"| Score | {prompt.score:.2f}/100 |",
            f"| Session | `{prompt.session_hash}` |",
            f"| Generated | {_iso(generated)} |",
            "",
            "## Seven Dimensions",
            "",
            *[f"- **{key.capitalize()}:** {_dimension(prompt, key)}" for key in SEVEN_DIMENSIONS],
            "",
            "## Prompt Content",
            "",
            "```",
            prompt.content,
            "```",
            "",
            "## License Notice",
            "",
            LICENSE_NOTICE,
        ]
        if tests:
            lines += ["", "## Test Results", ""]
            for index, result in enumerate(tests, start=1):
                lines += [
                    f"### {index}. {result.test_name}",
                    "",
                    f"- **Status:** {'PASS' if result.passed else 'FAIL'}",
                    f"- **Score:** {result.score:.2f}/100",
                    f"- **Details:** {result.details}",
                    "",
                ]
        if edits:
            lines += ["", "## Edit History", ""]
            for index, edit in enumerate(edits, start=1):
                lines += [
                    f"### {index}. {edit.edit_type}",
                    "",
                    f"- **Confidence:** {edit.confidence:.2f}%",
                    f"- **Changes:** {edit.changes}",
                    "",
                ]
        return ExportArtifact("prompt.md", ("\n".join(lines) + "\n").encode("utf-8"), MARKDOWN_MIME)

    def render_json(self, prompt, tests, edits, now) -> ExportArtifact:
        data = {
            "metadata": {
                "product": BRANDING["product"],
                "version": BRANDING["version"],
                "company": BRANDING["company"],
                "generated_at": _iso(now),
                "license_notice": LICENSE_NOTICE,
            },
            "prompt": {
                "module": prompt.module_id,
                "vector": prompt.vector,
                "score": prompt.score,
                "session_hash": prompt.session_hash,
                "config": prompt.config,
                "content": prompt.content,
            },
            "test_results": [r.model_dump(mode="json") for r in tests],
            "edit_history": [e.model_dump(mode="json") for e in edits],
            "seven_dimensions": prompt.config,
        }
        content = json.dumps(data, indent=2, ensure_ascii=False, default=str)
        return ExportArtifact("prompt.json", content.encode("utf-8"), JSON_MIME)

    def render_pdf(self, prompt, tests, edits, now) -> ExportArtifact:
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            leftMargin=20 * mm,
            rightMargin=20 * mm,
            topMargin=20 * mm,
            bottomMargin=20 * mm,
            title=f"{BRANDING['product']} prompt {prompt.module_id}",
            author=BRANDING["company"],
        )
        styles = getSampleStyleSheet()
        story = [
            Paragraph(escape(f"{BRANDING['product']} {BRANDING['version']}"), styles["Title"]),
            Paragraph(escape(BRANDING["company"]), styles["Normal"]),
            Spacer(1, 12),
            Paragraph("Prompt Specification", styles["Heading2"]),
        ]
        for line in self._header_lines(prompt, now):
            story.append(Paragraph(escape(line), styles["Normal"]))

        story += [Spacer(1, 12), Paragraph("Seven Dimensions", styles["Heading2"])]
        for key in SEVEN_DIMENSIONS:
            story.append(Paragraph(escape(f"{key.capitalize()}: {_dimension(prompt, key)}"), styles["Normal"]))

        story += [
            Spacer(1, 12),
            Paragraph("Prompt Content", styles["Heading2"]),
            Preformatted(prompt.content, styles["Code"], maxLineLength=90),
        ]

        if tests:
            story += [Spacer(1, 12), Paragraph("Test Results", styles["Heading2"])]
            for index, result in enumerate(tests, start=1):
                status = "PASS" if result.passed else "FAIL"
                story.append(Paragraph(
                    escape(f"{index}. {result.test_name}: {status} ({result.score:.2f}/100) {result.details}"),
                    styles["Normal"],
                ))
        if edits:
            story += [Spacer(1, 12), Paragraph("Edit History", styles["Heading2"])]
            for index, edit in enumerate(edits, start=1):
                story.append(Paragraph(
                    escape(f"{index}. {edit.edit_type}: {edit.confidence:.2f}% {edit.changes}"),
                    styles["Normal"],
                ))

        story += [Spacer(1, 24), Paragraph(escape(LICENSE_NOTICE), styles["Italic"])]
        doc.build(story)
        return ExportArtifact("prompt.pdf", buffer.getvalue(), PDF_MIME)

    def render_telemetry(self, prompt, tests, edits, tier: PlanTier, now) -> ExportArtifact:
        telemetry = {
            "timestamp": _iso(now),
            "session_id": prompt.session_hash,
            "module": prompt.module_id,
            "vector": prompt.vector,
            "validation_score": prompt.score,
            "test_count": len(tests),
            "edit_count": len(edits),
            "test_scores": [r.score for r in tests],
            "edit_confidences": [e.confidence for e in edits],
            "seven_dimensions": prompt.config,
            "export_plan": tier.value,
            "bundle_version": BUNDLE_VERSION,
        }
        content = json.dumps(telemetry, indent=2, ensure_ascii=False, default=str)
        return ExportArtifact("telemetry.json", content.encode("utf-8"), JSON_MIME)

    def render_checksum_file(self, checksum: str, now) -> ExportArtifact:
        content = (
            f"Bundle Checksum: {checksum}\n"
            f"Generated: {_iso(now)}\n"
            "Algorithm: SHA-256\n\n"
            "Verify integrity by comparing this checksum with bundle_checksum in manifest.json.\n"
        )
        return ExportArtifact("checksum.txt", content.encode("utf-8"), TEXT_MIME)

    def build_manifest(self, prompt, tier: PlanTier, artifacts, checksum, tests, edits, now) -> Dict[str, Any]:
        entitled = allowed_formats(tier)
        return {
            "project": "PROMPTFORGE_v3",
            "module": str(prompt.module_id),
            "run_id": prompt.session_hash,
            "sevenD": {key: _dimension(prompt, key, default="unknown") for key in SEVEN_DIMENSIONS},
            "files": {artifact.filename: artifact.sha256 for artifact in artifacts},
            "score": prompt.score,
            "kpi": {
                "validation_score": prompt.score,
                "test_count": len(tests),
                "edit_count": len(edits),
            },
            "license_notice": LICENSE_NOTICE,
            "bundle_checksum": checksum,
            "path_prefix": f"exports/{prompt.module_id}_{prompt.session_hash}",
            "visibility": "internal",
            "created_at": _iso(now),
            "branding": dict(BRANDING),
            "plan_restrictions": {
                "user_plan": tier.value,
                "allowed_formats": [f.value for f in ExportFormat if f in entitled],
                "bundle_available": ExportFormat.BUNDLE in entitled,
            },
        }

    def build_zip(self, artifacts: List[ExportArtifact]) -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for artifact in artifacts:
                archive.writestr(artifact.filename, artifact.content)
        return buffer.getvalue()
