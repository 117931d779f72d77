"""
Tests for the /writing endpoints.
"""

from types import SimpleNamespace

import pytest

from ielts_app.ai_client import ProviderError
from ielts_app.routers import writing
from conftest import WRITING_TASK2_REPLY


class TestTask1:
	def test_generate(self, client, fake_ai):
		fake_ai.replies = ["Line graph: rainfall in three cities", "**You should spend about 20 minutes on this task.**"]
		response = client.post("/writing/task1/generate")
		assert response.status_code == 200
		assert response.json() == {
			"prompt": "You should spend about 20 minutes on this task.",
			"imageUrl": "https://images.example/chart.png",
		}

	def test_generate_image_failure(self, client, fake_ai):
		fake_ai.replies = ["Pie chart data"]
		fake_ai.image_url = ProviderError("Failed to generate image - no URL returned from provider")
		response = client.post("/writing/task1/generate")
		assert response.status_code == 500
		assert response.json() == {
			"error": "Failed to generate prompt: Failed to generate image - no URL returned from provider"
		}

	def test_evaluate(self, client, fake_ai):
		fake_ai.default_text = WRITING_TASK2_REPLY.replace("TASK_RESPONSE", "TASK_ACHIEVEMENT")
		response = client.post("/writing/task1/evaluate", json={"response": "The graph shows...", "prompt": "Describe"})
		assert response.status_code == 200
		data = response.json()
		assert list(data["criteria"]) == [
			"task_achievement",
			"coherence_cohesion",
			"lexical_resource",
			"grammatical_range",
		]
		assert data["criteria"]["task_achievement"]["title"] == "Task Achievement"
		assert data["criteria"]["task_achievement"]["score"]["display"] == "6.5"


class TestTask2:
	def test_generate(self, client, fake_ai):
		fake_ai.replies = ["Some people think that university education should be free."]
		response = client.post("/writing/task2/generate")
		assert response.status_code == 200
		assert response.json() == {"prompt": "Some people think that university education should be free."}

	def test_generate_failure(self, client, fake_ai):
		fake_ai.replies = [ProviderError("Provider returned HTTP 429: rate limited")]
		response = client.post("/writing/task2/generate")
		assert response.status_code == 500
		assert response.json() == {"error": "Failed to generate prompt: Provider returned HTTP 429: rate limited"}

	def test_evaluate(self, client, fake_ai):
		fake_ai.replies = [WRITING_TASK2_REPLY]
		response = client.post("/writing/task2/evaluate", json={"response": "My essay", "prompt": "Discuss"})
		assert response.status_code == 200
		data = response.json()
		assert data["criteria"]["task_response"]["title"] == "Task Response"
		assert data["criteria"]["task_response"]["feedback"] == "Addresses both views but the conclusion is thin."
		assert data["overall_band"]["display"] == "6.5"

	@pytest.mark.parametrize("body", [{"response": "essay"}, {"prompt": "Discuss"}, {"response": "", "prompt": "Discuss"}])
	def test_evaluate_missing_fields(self, client, body):
		response = client.post("/writing/task2/evaluate", json=body)
		assert response.status_code == 400
		assert response.json() == {"error": "Response and prompt are required"}

	def test_evaluate_failure(self, client, fake_ai):
		fake_ai.replies = [ProviderError("timed out")]
		response = client.post("/writing/task2/evaluate", json={"response": "My essay", "prompt": "Discuss"})
		assert response.status_code == 500
		assert response.json() == {"error": "Failed to evaluate response: timed out"}


class TestHandwrittenAnswers:
	def test_ocr_text_is_evaluated(self, client, fake_ai, monkeypatch):
		monkeypatch.setattr(writing, "Image", SimpleNamespace(open=lambda stream: "image"))
		monkeypatch.setattr(writing, "pytesseract", SimpleNamespace(image_to_string=lambda img: "  Handwritten essay  "))
		fake_ai.replies = [WRITING_TASK2_REPLY]

		response = client.post(
			"/writing/task2/evaluate/image",
			data={"prompt": "Discuss"},
			files={"file": ("essay.png", b"fake-bytes", "image/png")},
		)
		assert response.status_code == 200
		assert response.json()["overall_band"]["display"] == "6.5"
		assert "RESPONSE: Handwritten essay\n" in fake_ai.text_calls[0][1]

	def test_ocr_unavailable(self, client, monkeypatch):
		monkeypatch.setattr(writing, "pytesseract", None)
		response = client.post(
			"/writing/task1/evaluate/image",
			data={"prompt": "Describe"},
			files={"file": ("chart.png", b"fake-bytes", "image/png")},
		)
		assert response.status_code == 500
		assert "OCR dependencies not installed" in response.json()["error"]

	def test_unreadable_image(self, client, monkeypatch):
		def broken_open(stream):
			raise OSError("cannot identify image file")

		monkeypatch.setattr(writing, "Image", SimpleNamespace(open=broken_open))
		monkeypatch.setattr(writing, "pytesseract", SimpleNamespace(image_to_string=lambda img: ""))
		response = client.post(
			"/writing/task1/evaluate/image",
			data={"prompt": "Describe"},
			files={"file": ("chart.png", b"not an image", "image/png")},
		)
		assert response.status_code == 400
		assert response.json() == {"error": "Failed to OCR image: cannot identify image file"}
