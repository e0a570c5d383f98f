"""Job handler for the ``pdf`` queue."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any

from finjobs.core.business_metrics import BusinessMetric
from finjobs.core.metrics_service import MetricsService
from finjobs.jobs.isolation import JobContext
from finjobs.reports.pdf_generator import PDFReportGenerator

logger = logging.getLogger(__name__)


def generate_pdf(ctx: JobContext) -> dict[str, Any]:
    """Render the requested document into the worker's ``pdf_output_dir``.

    Returns:
        filename, filepath, size and type of the written file
    """
    payload = ctx.payload
    report_type = payload["type"]
    ctx.report_progress(10)

    content = PDFReportGenerator().generate(
        report_type, payload.get("data") or {}, payload.get("options") or {}
    )
    ctx.report_progress(80)
    ctx.raise_if_cancelled()

    output_dir = ctx.services.settings.pdf_output_dir
    os.makedirs(output_dir, exist_ok=True)
    owner = payload.get("user_id") or "anonymous"
    filename = f"{report_type}-{owner}-{ctx.job_id}.pdf"
    filepath = os.path.join(output_dir, filename)
    with open(filepath, "wb") as f:
        f.write(content)

    logger.info(f"Generated {report_type} PDF for job {ctx.job_id} ({len(content)} bytes)")
    MetricsService.emit_report_metric(BusinessMetric.PDF_GENERATED, report_type)
    return {
        "filename": filename,
        "filepath": filepath,
        "size": len(content),
        "type": report_type,
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }
