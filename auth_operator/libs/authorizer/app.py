"""
Authorization webhook server.

FastAPI application answering authorization.k8s.io/v1 SubjectAccessReview
requests from the API server with the decision engine, and serving the
operator's Prometheus metrics.
"""

import logging
from typing import Dict, List, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as ModelValidationError

from ..core.constants import KubernetesConstants, NetworkConstants
from .decision import AccessRequest, DecisionEngine, DecisionResult
from .policy import PolicyIndex

logger = logging.getLogger(__name__)

SAR_KIND = "SubjectAccessReview"


class ResourceAttributes(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    namespace: str = ""
    verb: str = ""
    group: str = ""
    version: str = ""
    resource: str = ""
    subresource: str = ""
    name: str = ""


class NonResourceAttributes(BaseModel):
    path: str = ""
    verb: str = ""


class SubjectAccessReviewSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user: str = ""
    groups: Optional[List[str]] = None
    uid: str = ""
    extra: Optional[Dict[str, List[str]]] = None
    resource_attributes: Optional[ResourceAttributes] = Field(default=None, alias="resourceAttributes")
    non_resource_attributes: Optional[NonResourceAttributes] = Field(default=None, alias="nonResourceAttributes")


class SubjectAccessReview(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_version: str = Field(default=KubernetesConstants.SAR_API_VERSION, alias="apiVersion")
    kind: str = SAR_KIND
    spec: SubjectAccessReviewSpec

    def to_access_request(self) -> AccessRequest:
        """
        Convert to the decision engine's request type

        Raises:
            ValueError: If the review carries neither resource nor non-resource attributes
        """
        spec = self.spec
        groups = list(spec.groups or [])
        if spec.resource_attributes is not None:
            attrs = spec.resource_attributes
            return AccessRequest(
                user=spec.user, groups=groups, verb=attrs.verb, api_group=attrs.group,
                resource=attrs.resource, subresource=attrs.subresource, name=attrs.name,
                namespace=attrs.namespace, is_resource_request=True,
            )
        if spec.non_resource_attributes is not None:
            attrs = spec.non_resource_attributes
            return AccessRequest(
                user=spec.user, groups=groups, verb=attrs.verb, path=attrs.path,
                is_resource_request=False,
            )
        raise ValueError("spec must contain resourceAttributes or nonResourceAttributes")


def review_response(result: DecisionResult) -> Dict[str, object]:
    """SubjectAccessReview response body for a decision"""
    status = {'allowed': result.allowed, 'reason': result.reason}
    if result.denied:
        status['denied'] = True
    return {
        'apiVersion': KubernetesConstants.SAR_API_VERSION,
        'kind': SAR_KIND,
        'status': status,
    }


class BodyTooLarge(Exception):
    pass


async def _read_limited(request: Request, limit: int) -> bytes:
    declared = request.headers.get('content-length')
    if declared and declared.isdigit() and int(declared) > limit:
        raise BodyTooLarge()
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise BodyTooLarge()
    return bytes(body)


def create_app(engine: DecisionEngine, policy_index: PolicyIndex,
               max_body_size: int = NetworkConstants.MAX_REQUEST_BODY_SIZE) -> FastAPI:
    """
    Build the webhook application

    Args:
        engine: Decision engine answering the reviews
        policy_index: Index whose sync state drives /readyz
        max_body_size: Largest accepted request body in bytes

    Returns:
        FastAPI application
    """
    app = FastAPI(title="auth-operator authorization webhook", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/healthz")
    async def healthz() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/readyz")
    async def readyz():
        if not policy_index.is_synced():
            return JSONResponse(status_code=503, content={"status": "policy index not synced"})
        return {"status": "ok", "policies": len(policy_index)}

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.post("/")
    @app.post("/authorize")
    async def authorize(request: Request):
        try:
            body = await _read_limited(request, max_body_size)
        except BodyTooLarge:
            logger.warning(f"Rejected SubjectAccessReview larger than {max_body_size} bytes")
            return JSONResponse(status_code=413, content={"error": "request body too large"})

        try:
            review = SubjectAccessReview.model_validate_json(body)
            access_request = review.to_access_request()
        except (ModelValidationError, ValueError) as e:
            logger.error(f"Failed to decode SubjectAccessReview request: {e}")
            return JSONResponse(status_code=400, content={"error": "invalid request body"})

        result = engine.decide(access_request)
        return JSONResponse(content=review_response(result))

    return app
