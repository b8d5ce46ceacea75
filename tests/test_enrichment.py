"""Enrichment tests: request payload to Ollama is deterministic and failures surface as EnrichmentFailure (no network)."""

import asyncio
import json
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

import httpx

from fakes import make_settings, make_vuln

from app.core.errors import EnrichmentFailure
from app.services.enrichment import OllamaEnricher, _strip_code_fence, select_for_enrichment


def _mock_client(mock_client_class: MagicMock, post: AsyncMock) -> None:
    mock_instance = MagicMock()
    mock_instance.post = post
    mock_client_class.return_value.__aenter__ = AsyncMock(return_value=mock_instance)
    mock_client_class.return_value.__aexit__ = AsyncMock(return_value=None)


def _response(body: object, status_code: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = body
    return resp


class TestEnrichmentPayload(unittest.TestCase):
    @patch("app.services.enrichment.httpx.AsyncClient")
    def test_payload_includes_deterministic_options(self, mock_client_class: MagicMock) -> None:
        captured: dict[str, object] = {}
        vuln = make_vuln()

        async def fake_post(url: str, **kwargs: object) -> MagicMock:
            captured["url"] = url
            captured["payload"] = kwargs.get("json")
            findings = [{"id": vuln.id, "public_facing": True, "exploit_likelihood": "high"}]
            return _response({"response": json.dumps({"findings": findings})})

        _mock_client(mock_client_class, AsyncMock(side_effect=fake_post))
        settings = make_settings(OLLAMA_TEMPERATURE=0.0, OLLAMA_SEED=7)
        asyncio.run(OllamaEnricher(settings).enrich([vuln]))

        payload = captured["payload"]
        self.assertTrue(str(captured["url"]).endswith("/api/generate"))
        self.assertEqual(payload["options"], {"temperature": 0.0, "seed": 7})
        self.assertFalse(payload["stream"])
        self.assertEqual(payload["format"], "json")
        self.assertIn(vuln.id, payload["prompt"])

    @patch("app.services.enrichment.httpx.AsyncClient")
    def test_context_attached_without_touching_severity(self, mock_client_class: MagicMock) -> None:
        first = make_vuln(severity="high", confidence=0.8)
        second = make_vuln(severity="low", confidence=0.6, rule_id="python.flask.debug-enabled")
        body = {
            "response": "```json\n"
            + json.dumps(
                {
                    "findings": [
                        {
                            "id": first.id,
                            "public_facing": True,
                            "auth_required": False,
                            "exploit_likelihood": "high",
                            "framework": "flask",
                        }
                    ]
                }
            )
            + "\n```"
        }
        _mock_client(mock_client_class, AsyncMock(return_value=_response(body)))
        enriched = asyncio.run(OllamaEnricher(make_settings()).enrich([first, second]))

        self.assertEqual([v.id for v in enriched], [first.id, second.id])
        self.assertEqual(enriched[0].metadata["risk_context"]["framework"], "flask")
        self.assertNotIn("risk_context", enriched[1].metadata)
        self.assertEqual((enriched[0].severity, enriched[0].confidence), ("high", 0.8))

    def test_empty_input_makes_no_request(self) -> None:
        with patch("app.services.enrichment.httpx.AsyncClient") as mock_client_class:
            self.assertEqual(asyncio.run(OllamaEnricher(make_settings()).enrich([])), [])
        mock_client_class.assert_not_called()


class TestEnrichmentFailures(unittest.TestCase):
    def _enrich_with(self, post: AsyncMock) -> None:
        with patch("app.services.enrichment.httpx.AsyncClient") as mock_client_class:
            _mock_client(mock_client_class, post)
            asyncio.run(OllamaEnricher(make_settings()).enrich([make_vuln()]))

    def test_unreachable(self) -> None:
        with self.assertRaises(EnrichmentFailure) as ctx:
            self._enrich_with(AsyncMock(side_effect=httpx.ConnectError("refused")))
        self.assertIn("unreachable", ctx.exception.message)

    def test_timeout(self) -> None:
        with self.assertRaises(EnrichmentFailure):
            self._enrich_with(AsyncMock(side_effect=httpx.ReadTimeout("slow")))

    def test_bad_status(self) -> None:
        with self.assertRaises(EnrichmentFailure) as ctx:
            self._enrich_with(AsyncMock(return_value=_response({}, status_code=404)))
        self.assertIn("404", ctx.exception.message)

    def test_body_not_an_object(self) -> None:
        with self.assertRaises(EnrichmentFailure) as ctx:
            self._enrich_with(AsyncMock(return_value=_response(["not", "an", "object"])))
        self.assertIn("not a JSON object", ctx.exception.message)

    def test_model_returns_prose(self) -> None:
        with self.assertRaises(EnrichmentFailure):
            self._enrich_with(AsyncMock(return_value=_response({"response": "I think this is fine."})))

    def test_model_output_wrong_shape(self) -> None:
        with self.assertRaises(EnrichmentFailure):
            self._enrich_with(AsyncMock(return_value=_response({"response": '{"findings": [{"public_facing": true}]}'})))


class TestHelpers(unittest.TestCase):
    def test_strip_code_fence(self) -> None:
        self.assertEqual(_strip_code_fence('```json\n{"a": 1}\n```'), '{"a": 1}')
        self.assertEqual(_strip_code_fence('{"a": 1}'), '{"a": 1}')

    def test_select_most_severe_first(self) -> None:
        low = make_vuln(severity="low")
        crit = make_vuln(severity="critical")
        high = make_vuln(severity="high")
        self.assertEqual([v.id for v in select_for_enrichment([low, crit, high], 2)], [crit.id, high.id])
