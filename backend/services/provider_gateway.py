"""
Provider Gateway

Uniform submit/poll interface over external generation providers, with
Replicate as the concrete backend.

Key Features:
- Request validation against the model registry before anything is sent
- Submission errors raised as SubmissionError, never as a handle
- One normalization step mapping provider output shapes to a single URI
- No retries: retry policy belongs to the poller
- Logging integration with structlog
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import json
import os

import httpx
import replicate
from replicate.exceptions import ModelError, ReplicateError
from replicate.helpers import FileOutput
import structlog

from config import settings
from models import GenerationRequest, PredictionHandle, PredictionStatus, ProviderStatus
from pipeline.error_handler import ErrorCode, SubmissionError, APIError
from services.model_registry import ModelConfig, ModelRegistry


logger = structlog.get_logger(__name__)


_STATUS_MAP = {
    "starting": PredictionStatus.SUBMITTED,
    "queued": PredictionStatus.SUBMITTED,
    "processing": PredictionStatus.RUNNING,
    "running": PredictionStatus.RUNNING,
    "succeeded": PredictionStatus.SUCCEEDED,
    "failed": PredictionStatus.FAILED,
    "canceled": PredictionStatus.CANCELED,
    "cancelled": PredictionStatus.CANCELED,
    "aborted": PredictionStatus.CANCELED,
}

# Keys that carry the output URI in dict-shaped outputs, in priority order
_OUTPUT_KEYS = ("url", "video_url", "videoUrl", "audio_url", "audioUrl", "image_url", "imageUrl", "output")


def normalize_status(raw_status: Optional[str]) -> str:
    """Map a provider status string onto PredictionStatus. Unknown values count as running."""
    if not raw_status:
        return PredictionStatus.RUNNING
    return _STATUS_MAP.get(raw_status.lower(), PredictionStatus.RUNNING)


def normalize_output(output: Any) -> Optional[str]:
    """
    Reduce a provider output to a single URI.

    Handles plain strings, FileOutput objects, lists (first usable entry)
    and dicts keyed by any of the known URL field names. Returns None
    when nothing usable is present.
    """
    if output is None:
        return None
    if isinstance(output, FileOutput):
        return getattr(output, "url", None) or str(output)
    if isinstance(output, str):
        output = output.strip()
        return output or None
    if isinstance(output, dict):
        for key in _OUTPUT_KEYS:
            uri = normalize_output(output.get(key))
            if uri:
                return uri
        return None
    if isinstance(output, (list, tuple)):
        for item in output:
            uri = normalize_output(item)
            if uri:
                return uri
        return None
    return None


def normalize_text(output: Any) -> str:
    """Join streamed text-model output into one string."""
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    if isinstance(output, dict):
        return str(output.get("output") or output.get("text") or "")
    if isinstance(output, (list, tuple)):
        return "".join(str(chunk) for chunk in output)
    return str(output)


def parse_json_text(text: str) -> Optional[Any]:
    """
    Pull the first JSON object out of model text output.

    Tolerates markdown code fences and prose around the object. Returns
    None when no valid JSON object is found.
    """
    if not text:
        return None
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        return json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError:
        return None


def validate_request(request: GenerationRequest) -> ModelConfig:
    """
    Check a request names a known model and a non-empty prompt.

    Raises:
        SubmissionError: UNKNOWN_MODEL or INVALID_INPUT
    """
    model = ModelRegistry.find_model(request.model)
    if model is None:
        raise SubmissionError(
            f"Unknown model '{request.model}'",
            code=ErrorCode.UNKNOWN_MODEL,
            details={"model": request.model},
        )
    if not request.prompt or not request.prompt.strip():
        raise SubmissionError(
            "Prompt must not be empty",
            code=ErrorCode.INVALID_INPUT,
            details={"model": request.model, "field": "prompt"},
        )
    return model


def build_input(model: ModelConfig, request: GenerationRequest) -> Dict[str, Any]:
    """Translate a GenerationRequest into the model's input payload."""
    input_params: Dict[str, Any] = dict(model.default_params)
    input_params[model.prompt_field] = request.prompt

    if request.references and model.reference_field:
        if model.multiple_references:
            input_params[model.reference_field] = list(request.references)
        else:
            input_params[model.reference_field] = request.references[0]
            if model.last_frame_field and len(request.references) > 1:
                input_params[model.last_frame_field] = request.references[-1]

    if request.aspect_ratio and model.supports_aspect_ratio:
        input_params["aspect_ratio"] = request.aspect_ratio
    if request.width and request.height:
        input_params["width"] = request.width
        input_params["height"] = request.height

    input_params.update(request.options)
    return input_params


class ProviderGateway(ABC):
    """
    Abstract interface to a generation provider.

    submit() either returns a handle in the submitted state or raises
    SubmissionError; callers can therefore always tell "never started"
    apart from "started then failed".
    """

    @abstractmethod
    async def submit(self, request: GenerationRequest) -> PredictionHandle:
        """
        Submit a request to the provider.

        Raises:
            SubmissionError: If the request is invalid or rejected outright
        """

    @abstractmethod
    async def poll(self, prediction_id: str) -> ProviderStatus:
        """
        Fetch the current status of a prediction.

        Raises:
            httpx.TransportError: On network failure (retried by the poller)
        """


class ReplicateGateway(ProviderGateway):
    """
    Replicate-backed gateway.

    Usage:
        gateway = ReplicateGateway()
        handle = await gateway.submit(GenerationRequest(model="nano-banana", prompt="..."))
        status = await gateway.poll(handle.prediction_id)
    """

    def __init__(self, api_token: str = None, client: Optional[replicate.Client] = None):
        """
        Initialize the gateway.

        Args:
            api_token: Replicate API token. If None, loads from settings
            client: Preconfigured replicate.Client (optional)
        """
        self.api_token = api_token or settings.replicate_token
        if client is None and not self.api_token:
            raise ValueError(
                "Replicate API token is required. Set REPLICATE_API_TOKEN "
                "environment variable or pass api_token parameter."
            )
        if self.api_token:
            os.environ.setdefault("REPLICATE_API_TOKEN", self.api_token)

        self.client = client or replicate.Client(api_token=self.api_token)
        self.logger = logger.bind(service="provider_gateway")
        self.logger.info("provider_gateway_initialized", provider="replicate")

    async def submit(self, request: GenerationRequest) -> PredictionHandle:
        model = validate_request(request)
        input_params = build_input(model, request)

        self.logger.info(
            "creating_prediction",
            model_id=model.model_id,
            references=len(request.references),
            **request.labels,
        )

        try:
            if model.version:
                prediction = await self.client.predictions.async_create(
                    version=model.version,
                    input=input_params,
                )
            else:
                prediction = await self.client.predictions.async_create(
                    model=model.model_id,
                    input=input_params,
                )
        except ReplicateError as e:
            self.logger.error(
                "prediction_rejected",
                model_id=model.model_id,
                status_code=getattr(e, "status", None),
                error=str(e),
            )
            raise SubmissionError(
                f"Provider rejected request for {model.model_id}: {e}",
                status_code=getattr(e, "status", None),
                details={"model": request.model},
            ) from e
        except httpx.HTTPError as e:
            self.logger.error(
                "prediction_submit_failed",
                model_id=model.model_id,
                error=str(e),
            )
            raise SubmissionError(
                f"Could not submit request for {model.model_id}: {e}",
                details={"model": request.model},
            ) from e

        handle = PredictionHandle(
            prediction_id=prediction.id,
            model=request.model,
            labels=dict(request.labels),
        )

        self.logger.info(
            "prediction_created",
            prediction_id=prediction.id,
            status=prediction.status,
        )

        return handle

    async def poll(self, prediction_id: str) -> ProviderStatus:
        prediction = await self.client.predictions.async_get(prediction_id)
        status = normalize_status(prediction.status)

        result_uri = None
        if status == PredictionStatus.SUCCEEDED:
            result_uri = normalize_output(prediction.output)

        error = None
        if prediction.error:
            error = str(prediction.error)

        return ProviderStatus(
            status=status,
            result_uri=result_uri,
            error=error,
            raw_status=prediction.status,
        )

    async def run_model_async(self, model_name: str, input_params: dict, service: str = "planner") -> str:
        """
        Run a short text or vision model to completion and return its text.

        Args:
            model_name: Registry name or Replicate model ID
            input_params: Dictionary of input parameters
            service: Caller name used for the error code ("vision" or "planner")

        Raises:
            APIError: If the model fails or cannot be reached
        """
        model = ModelRegistry.find_model(model_name)
        model_id = model.model_id if model else model_name
        params = dict(model.default_params) if model else {}
        params.update(input_params)

        self.logger.info("running_model_async", model_id=model_id)

        try:
            output = await self.client.async_run(model_id, input=params)
            if hasattr(output, "__aiter__"):
                output = [chunk async for chunk in output]
        except (ModelError, ReplicateError, httpx.HTTPError) as e:
            self.logger.error("model_async_run_failed", model_id=model_id, error=str(e))
            raise APIError(service, str(e), {"model": model_id}) from e

        self.logger.info("model_async_run_success", model_id=model_id)
        return normalize_text(output)


def get_provider_gateway() -> ReplicateGateway:
    """
    Factory function to create a ReplicateGateway from settings.

    Returns:
        ReplicateGateway instance
    """
    return ReplicateGateway()
