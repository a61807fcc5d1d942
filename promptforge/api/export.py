"""
Export API.

- GET  /api/export/formats: formats available on a plan
- POST /api/export: render the entitled subset of the requested formats
- POST /api/export/download: single artifact (or the ZIP bundle) as a file

Both POST routes require an authenticated caller and export under the plan
found in their billing records.
"""
import base64
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from promptforge.api.entitlements import get_caller_plan
from promptforge.core.errors import ValidationError
from promptforge.features.entitlements.plans import (
    ExportFormat,
    PlanTier,
    allowed_formats,
    parse_format,
    parse_plan,
    plan_restrictions,
)
from promptforge.features.exports.models import DownloadRequest, ExportRequest
from promptforge.features.exports.service import ZIP_MIME, ExportArtifact, ExportService

router = APIRouter(prefix="/api/export", tags=["export"])

FORMAT_FILENAMES = {
    ExportFormat.TXT: "prompt.txt",
    ExportFormat.MD: "prompt.md",
    ExportFormat.JSON: "prompt.json",
    ExportFormat.PDF: "prompt.pdf",
}


def get_export_service() -> ExportService:
    return ExportService()


def _artifact_payload(artifact: ExportArtifact) -> dict:
    if artifact.is_text:
        content, encoding = artifact.content.decode("utf-8"), "utf-8"
    else:
        content, encoding = base64.b64encode(artifact.content).decode("ascii"), "base64"
    return {
        "filename": artifact.filename,
        "mime_type": artifact.mime_type,
        "size": artifact.size,
        "sha256": artifact.sha256,
        "encoding": encoding,
        "content": content,
    }


@router.get("/formats")
def export_formats(plan: Optional[str] = Query(None)):
    tier = parse_plan(plan)
    entitled = allowed_formats(tier)
    return {
        "plan": tier.value,
        "available_formats": [f.value for f in ExportFormat if f in entitled],
        "supported_formats": [f.value for f in ExportFormat],
        "plan_restrictions": plan_restrictions(),
    }


@router.post("")
def create_export(
    body: ExportRequest,
    tier: PlanTier = Depends(get_caller_plan),
    service: ExportService = Depends(get_export_service),
):
    bundle = service.build_bundle(
        tier,
        body.formats,
        body.prompt,
        test_results=body.test_results,
        edit_results=body.edit_results,
    )
    payload = {
        "success": True,
        "plan": bundle.plan.value,
        "formats": [f.value for f in bundle.formats],
        "checksum": bundle.checksum,
        "artifacts": [_artifact_payload(a) for a in bundle.artifacts],
        "manifest": bundle.manifest,
    }
    if bundle.zip_bytes is not None:
        payload["bundle"] = {
            "filename": f"promptforge_bundle_{body.prompt.session_hash}.zip",
            "mime_type": ZIP_MIME,
            "size": len(bundle.zip_bytes),
            "encoding": "base64",
            "content": base64.b64encode(bundle.zip_bytes).decode("ascii"),
        }
    return payload


@router.post("/download")
def download_export(
    body: DownloadRequest,
    tier: PlanTier = Depends(get_caller_plan),
    service: ExportService = Depends(get_export_service),
):
    fmt = parse_format(body.format)
    if fmt is None:
        raise ValidationError(
            "Unsupported export format",
            code="unsupported_format",
            extra={"supported_formats": [f.value for f in ExportFormat]},
        )

    bundle = service.build_bundle(
        tier,
        [fmt],
        body.prompt,
        test_results=body.test_results,
        edit_results=body.edit_results,
    )

    if fmt == ExportFormat.BUNDLE:
        content, media_type = bundle.zip_bytes, ZIP_MIME
        filename = f"promptforge_bundle_{body.prompt.session_hash}.zip"
    else:
        artifact = bundle.artifact(FORMAT_FILENAMES[fmt])
        content, media_type, filename = artifact.content, artifact.mime_type, artifact.filename

    return Response(
        content=content,
        media_type=media_type,
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Bundle-Checksum": bundle.checksum,
            "X-Artifact-Count": str(len(bundle.artifacts)),
            "X-Format": fmt.value,
        },
    )
