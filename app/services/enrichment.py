"""Enrichment service: send normalized findings to a local LLM (Ollama) and attach risk context."""

import json
import logging
import time
from typing import TYPE_CHECKING

import httpx
from pydantic import ValidationError

from app.core.errors import EnrichmentFailure
from app.schemas.enrichment import EnrichmentResponse
from app.schemas.vulnerability import NormalizedVulnerability, severity_rank

if TYPE_CHECKING:
    from app.core.config import Settings

logger = logging.getLogger(__name__)

SNIPPET_LIMIT = 400


def _build_prompt(vulns: list[NormalizedVulnerability]) -> str:
    """Build a single prompt that includes finding data and instructs the model to return only JSON."""
    findings_data = [
        {
            "id": v.id,
            "type": v.type,
            "severity": v.severity,
            "title": v.title,
            "file_path": v.file_path or "",
            "rule_id": v.rule_id,
            # secrets are already redacted by the adapter
            "code_snippet": (v.code_snippet or "")[:SNIPPET_LIMIT],
        }
        for v in vulns
    ]
    findings_json = json.dumps(findings_data, indent=2)
    return f"""You are a security analyst. Below is a list of findings from automated security scanners. For each finding, judge the context it sits in.

Findings (JSON):
{findings_json}

Respond with ONLY a single valid JSON object (no markdown, no code fence, no extra text). The JSON must have exactly this shape:
{{
  "findings": [
    {{
      "id": "<same as in the list>",
      "public_facing": true,
      "auth_required": false,
      "exploit_likelihood": "high|medium|low",
      "framework": "<framework name or null>"
    }}
  ]
}}

Include one object in "findings" for each finding in the input list. Output only the JSON object."""


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        if lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines)
    return text


def select_for_enrichment(
    vulns: list[NormalizedVulnerability], limit: int
) -> list[NormalizedVulnerability]:
    """Most severe (then most confident) findings first, capped at limit."""
    ranked = sorted(vulns, key=lambda v: (severity_rank(v.severity), -v.confidence, v.id))
    return ranked[:limit]


class OllamaEnricher:
    """
    Best-effort enrichment. Only metadata["risk_context"] is ever written;
    severity and confidence are left as the scanners assigned them.
    """

    def __init__(self, settings: "Settings") -> None:
        self._settings = settings

    async def enrich(self, vulns: list[NormalizedVulnerability]) -> list[NormalizedVulnerability]:
        """
        Return the findings with risk context attached where the model supplied it.

        Raises EnrichmentFailure on connection failure, timeout, or invalid JSON.
        """
        if not vulns:
            return vulns
        selected = select_for_enrichment(vulns, self._settings.ENRICHMENT_MAX_FINDINGS)
        response = await self._generate(selected)
        contexts = {c.id: c for c in response.findings}
        enriched: list[NormalizedVulnerability] = []
        for v in vulns:
            context = contexts.get(v.id)
            if context is None:
                enriched.append(v)
                continue
            metadata = dict(v.metadata)
            metadata["risk_context"] = context.model_dump(exclude={"id"})
            enriched.append(v.model_copy(update={"metadata": metadata}))
        return enriched

    async def _generate(self, vulns: list[NormalizedVulnerability]) -> EnrichmentResponse:
        settings = self._settings
        url = f"{settings.OLLAMA_BASE_URL.rstrip('/')}/api/generate"
        payload = {
            "model": settings.OLLAMA_MODEL,
            "prompt": _build_prompt(vulns),
            "stream": False,
            "format": "json",
            "options": {
                "temperature": settings.OLLAMA_TEMPERATURE,
                "seed": settings.OLLAMA_SEED,
            },
        }
        timeout = httpx.Timeout(settings.OLLAMA_REQUEST_TIMEOUT_SEC)
        start = time.perf_counter()
        log_extra: dict[str, float | int | str | None] = {
            "finding_count": len(vulns),
            "model": settings.OLLAMA_MODEL,
        }

        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(url, json=payload)
        except httpx.ConnectError as e:
            logger.info(
                "LLM enrichment request failed",
                extra={**log_extra, "llm_latency_seconds": time.perf_counter() - start, "status": "error"},
            )
            raise EnrichmentFailure(
                "Ollama is unreachable. Ensure Ollama is running and OLLAMA_BASE_URL is correct.",
                cause=e,
            ) from e
        except httpx.TimeoutException as e:
            logger.info(
                "LLM enrichment request failed",
                extra={**log_extra, "llm_latency_seconds": time.perf_counter() - start, "status": "error"},
            )
            raise EnrichmentFailure(
                "Ollama request timed out. Try increasing OLLAMA_REQUEST_TIMEOUT_SEC or lowering ENRICHMENT_MAX_FINDINGS.",
                cause=e,
            ) from e
        except httpx.HTTPError as e:
            raise EnrichmentFailure("Ollama request failed.", cause=e) from e

        log_extra["llm_latency_seconds"] = time.perf_counter() - start
        if response.status_code != 200:
            raise EnrichmentFailure(
                f"Ollama returned status {response.status_code}. Check that the model is pulled (e.g. ollama pull {settings.OLLAMA_MODEL})."
            )

        try:
            body = response.json()
        except json.JSONDecodeError as e:
            raise EnrichmentFailure("Ollama response body is not valid JSON.", cause=e) from e
        if not isinstance(body, dict):
            raise EnrichmentFailure("Ollama response body is not a JSON object.")

        if body.get("eval_duration") is not None:
            log_extra["eval_duration_nanoseconds"] = body["eval_duration"]
        logger.info("LLM enrichment request completed", extra=log_extra)

        raw_response = body.get("response")
        if raw_response is None:
            raise EnrichmentFailure("Ollama response missing 'response' field.")

        # Response may be a string (the generated text) or already parsed
        if isinstance(raw_response, str):
            try:
                parsed = json.loads(_strip_code_fence(raw_response))
            except json.JSONDecodeError as e:
                raise EnrichmentFailure(
                    "Invalid JSON from model. The model must respond with only valid JSON.",
                    cause=e,
                ) from e
        else:
            parsed = raw_response

        if not isinstance(parsed, dict):
            raise EnrichmentFailure("Model output is not a JSON object.")

        try:
            return EnrichmentResponse.model_validate(parsed)
        except ValidationError as e:
            raise EnrichmentFailure(
                "Model output does not match expected schema (findings with id and risk context fields).",
                cause=e,
            ) from e
