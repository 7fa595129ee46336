# simkube/models/admission.py
import base64
import json
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List

ADMISSION_API_VERSION = "admission.k8s.io/v1"
JSON_PATCH_TYPE = "JSONPatch"


class AdmissionRequest(BaseModel):
    uid: str
    kind: Dict[str, str] = {}
    resource: Dict[str, str] = {}
    name: Optional[str] = None
    namespace: Optional[str] = None
    operation: str = "CREATE"
    user_info: Dict[str, Any] = Field({}, alias="userInfo")
    object: Optional[Dict[str, Any]] = None
    old_object: Optional[Dict[str, Any]] = Field(None, alias="oldObject")
    dry_run: bool = Field(False, alias="dryRun")

    class Config:
        populate_by_name = True
        extra = 'ignore'


class AdmissionStatus(BaseModel):
    code: Optional[int] = None
    message: Optional[str] = None


class AdmissionResponse(BaseModel):
    uid: str = ""
    allowed: bool = True
    patch: Optional[str] = Field(None, description="Base64-encoded JSON patch")
    patch_type: Optional[str] = Field(None, alias="patchType")
    status: Optional[AdmissionStatus] = None

    class Config:
        populate_by_name = True

    @classmethod
    def from_request(cls, req: AdmissionRequest) -> "AdmissionResponse":
        return cls(uid=req.uid, allowed=True)

    @classmethod
    def invalid(cls, reason: str, uid: str = "") -> "AdmissionResponse":
        return cls(uid=uid, allowed=False, status=AdmissionStatus(code=400, message=reason))

    def deny(self, reason: str) -> "AdmissionResponse":
        return AdmissionResponse(uid=self.uid, allowed=False, status=AdmissionStatus(code=403, message=reason))

    def with_patch(self, ops: List[Dict[str, Any]]) -> "AdmissionResponse":
        encoded = base64.b64encode(json.dumps(ops).encode("utf-8")).decode("ascii")
        return AdmissionResponse(uid=self.uid, allowed=True, patch=encoded, patch_type=JSON_PATCH_TYPE)

    def decoded_patch(self) -> Optional[List[Dict[str, Any]]]:
        if self.patch is None:
            return None
        return json.loads(base64.b64decode(self.patch))


class AdmissionReview(BaseModel):
    api_version: str = Field(ADMISSION_API_VERSION, alias="apiVersion")
    kind: str = "AdmissionReview"
    request: Optional[AdmissionRequest] = None
    response: Optional[AdmissionResponse] = None

    class Config:
        populate_by_name = True
        extra = 'ignore'
