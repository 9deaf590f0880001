"""HTTP API over the certificate stores and the certificate authority.

Creation, signing and upload routes answer ``{"new_cert": "<name>.crt"}`` on
success and an empty 500 response when the workflow fails; the reason is
only logged.
"""

import json
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import aiofiles.os
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import FileResponse, PlainTextResponse

from mr_cert.api.schemas import (
    CsrSignRequest,
    IntermediateCertRequest,
    LeafCertRequest,
    RootCertRequest,
    RootUploadRequest,
    SignedUploadRequest,
    SignerModel,
)
from mr_cert.lib.cert_storage import CertStorage
from mr_cert.lib.cert_utils import deserialize_certificate, extract_certificate_details
from mr_cert.lib.certificate_authority import CertificateAuthority
from mr_cert.lib.errors import InvalidNameError
from mr_cert.lib.file_io import read_bytes
from mr_cert.lib.logging_config import LOGGER
from mr_cert.lib.models import Certificate, CertificateDetails, CertType, FileRole

StorageMap = Mapping[CertType, CertStorage]

router = APIRouter()


def get_storages(request: Request) -> StorageMap:
    return request.app.state.storages


def get_ca(request: Request) -> CertificateAuthority:
    return request.app.state.ca


def get_storage(cert_type: str, storages: StorageMap = Depends(get_storages)) -> CertStorage:
    """Storage for the ``cert_type`` path parameter; 404 for unknown categories."""
    try:
        return storages[CertType(cert_type)]
    except (ValueError, KeyError):
        raise HTTPException(status_code=404, detail=f"Unknown certificate type: {cert_type}")


def _summary(cert: Certificate) -> dict[str, Any]:
    summary = cert.attributes.to_dict()
    summary["has_key"] = cert.has_files(FileRole.KEY)
    summary["has_chain"] = (
        cert.has_files(FileRole.CHAIN) and cert.attributes.signer_type == CertType.INTERMEDIATE
    )
    return summary


async def _certificate_details(cert: Certificate) -> CertificateDetails | None:
    path = cert.file_path(FileRole.CERTIFICATE)
    try:
        return extract_certificate_details(deserialize_certificate(await read_bytes(path)))
    except (OSError, ValueError) as e:
        LOGGER.warning("Could not parse %s: %s", path, e)
        return None


def _created(name: str | None) -> dict[str, str] | Response:
    if not name:
        return Response(status_code=500)
    return {"new_cert": f"{name}.crt"}


async def _with_signer(
    storages: StorageMap,
    signer: SignerModel,
    action: Callable[[Certificate], Awaitable[str | None]],
) -> str | None:
    """Run ``action`` holding the signer bundle's lock."""
    try:
        signer_storage = storages[CertType(signer.type)]
    except (ValueError, KeyError):
        LOGGER.warning("Unknown signer type %s", signer.type)
        return None
    return await signer_storage.with_cert(signer.name, action)


async def _send_file(
    storage: CertStorage, name: str, role: FileRole, filename: str
) -> FileResponse:
    try:
        path = storage.get_file_path(name, role)
    except InvalidNameError:
        raise HTTPException(status_code=404, detail="Not found")
    if not await aiofiles.os.path.isfile(path):
        raise HTTPException(status_code=404, detail="Not found")
    return FileResponse(path, filename=filename)


@router.get("/api/have_certs")
async def have_certs(
    types: str = "[]", storages: StorageMap = Depends(get_storages)
) -> dict[str, bool]:
    """Whether any of the JSON-encoded list of categories holds a certificate."""
    try:
        requested = json.loads(types)
    except ValueError:
        raise HTTPException(status_code=400, detail="types must be a JSON list")
    if not isinstance(requested, list):
        raise HTTPException(status_code=400, detail="types must be a JSON list")

    for cert_type in requested:
        try:
            storage = storages[CertType(cert_type)]
        except (ValueError, KeyError):
            continue
        if await storage.get_certs(max_count=1):
            return {"have_certs": True}
    return {"have_certs": False}


@router.get("/api/{cert_type}")
async def list_certs(storage: CertStorage = Depends(get_storage)) -> dict[str, dict[str, Any]]:
    certs = await storage.get_certs()
    return {name: _summary(cert) for name, cert in certs.items()}


@router.get("/api/{cert_type}/text/{name}.crt", response_class=PlainTextResponse)
async def cert_text(
    name: str,
    storage: CertStorage = Depends(get_storage),
    ca: CertificateAuthority = Depends(get_ca),
) -> str:
    try:
        path = storage.get_file_path(name, FileRole.CERTIFICATE)
    except InvalidNameError:
        raise HTTPException(status_code=404, detail="Not found")

    text = await ca.get_text(path)
    if text is None:
        raise HTTPException(status_code=404, detail="Not found")
    return text


@router.get("/api/{cert_type}/{name}")
async def get_cert(name: str, storage: CertStorage = Depends(get_storage)) -> dict[str, Any]:
    cert = await storage.get_cert(name)
    if cert is None:
        raise HTTPException(status_code=404, detail="Certificate not found")

    summary = _summary(cert)
    details = await _certificate_details(cert)
    if details is not None:
        summary["details"] = details
    return summary


@router.get("/files/{cert_type}/{name}.chain.crt")
async def download_chain(name: str, storage: CertStorage = Depends(get_storage)) -> FileResponse:
    return await _send_file(storage, name, FileRole.CHAIN, f"{name}.chain.crt")


@router.get("/files/{cert_type}/{name}.key")
async def download_key(name: str, storage: CertStorage = Depends(get_storage)) -> FileResponse:
    return await _send_file(storage, name, FileRole.KEY, f"{name}.key")


@router.get("/files/{cert_type}/{name}.crt")
async def download_cert(name: str, storage: CertStorage = Depends(get_storage)) -> FileResponse:
    return await _send_file(storage, name, FileRole.CERTIFICATE, f"{name}.crt")


@router.post("/root/create-cert-file", response_model=None)
async def create_root_cert(
    body: RootCertRequest,
    storages: StorageMap = Depends(get_storages),
    ca: CertificateAuthority = Depends(get_ca),
) -> dict[str, str] | Response:
    name = await ca.make_root_cert(
        body.name,
        body.key_parameters(),
        body.distinguished_name(),
        body.intermediate_only,
        storages[CertType.ROOT],
    )
    return _created(name)


@router.post("/intermediate/create-cert-file", response_model=None)
async def create_intermediate_cert(
    body: IntermediateCertRequest,
    storages: StorageMap = Depends(get_storages),
    ca: CertificateAuthority = Depends(get_ca),
) -> dict[str, str] | Response:
    async def action(signer: Certificate) -> str | None:
        return await ca.make_intermediate_cert(
            body.name,
            signer,
            body.key_parameters(),
            body.distinguished_name(),
            storages[CertType.INTERMEDIATE],
        )

    return _created(await _with_signer(storages, body.signer, action))


async def _create_leaf_cert(
    cert_type: CertType,
    body: LeafCertRequest,
    storages: StorageMap,
    ca: CertificateAuthority,
) -> dict[str, str] | Response:
    make_cert = ca.make_server_cert if cert_type == CertType.SERVER else ca.make_client_cert

    async def action(signer: Certificate) -> str | None:
        return await make_cert(
            body.name,
            signer,
            body.key_parameters(),
            body.distinguished_name(),
            body.domain_names,
            storages[cert_type],
        )

    return _created(await _with_signer(storages, body.signer, action))


@router.post("/server/create-cert-file", response_model=None)
async def create_server_cert(
    body: LeafCertRequest,
    storages: StorageMap = Depends(get_storages),
    ca: CertificateAuthority = Depends(get_ca),
) -> dict[str, str] | Response:
    return await _create_leaf_cert(CertType.SERVER, body, storages, ca)


@router.post("/client/create-cert-file", response_model=None)
async def create_client_cert(
    body: LeafCertRequest,
    storages: StorageMap = Depends(get_storages),
    ca: CertificateAuthority = Depends(get_ca),
) -> dict[str, str] | Response:
    return await _create_leaf_cert(CertType.CLIENT, body, storages, ca)


async def _sign_csr(
    cert_type: CertType,
    body: CsrSignRequest,
    storages: StorageMap,
    ca: CertificateAuthority,
) -> dict[str, str] | Response:
    sign = ca.sign_server_csr if cert_type == CertType.SERVER else ca.sign_client_csr

    async def action(signer: Certificate) -> str | None:
        return await sign(
            body.name, signer, body.digest, body.lifetime, body.csr_contents, storages[cert_type]
        )

    return _created(await _with_signer(storages, body.signer, action))


@router.post("/server/sign-csr", response_model=None)
async def sign_server_csr(
    body: CsrSignRequest,
    storages: StorageMap = Depends(get_storages),
    ca: CertificateAuthority = Depends(get_ca),
) -> dict[str, str] | Response:
    return await _sign_csr(CertType.SERVER, body, storages, ca)


@router.post("/client/sign-csr", response_model=None)
async def sign_client_csr(
    body: CsrSignRequest,
    storages: StorageMap = Depends(get_storages),
    ca: CertificateAuthority = Depends(get_ca),
) -> dict[str, str] | Response:
    return await _sign_csr(CertType.CLIENT, body, storages, ca)


@router.post("/root/upload-cert-file", response_model=None)
async def upload_root_cert(
    body: RootUploadRequest,
    storages: StorageMap = Depends(get_storages),
    ca: CertificateAuthority = Depends(get_ca),
) -> dict[str, str] | Response:
    name = await ca.verify_and_store_cert(
        body.name,
        body.cert_contents,
        storages[CertType.ROOT],
        private_key_text=body.key_contents,
        create_ca_files=True,
        intermediate_only=body.intermediate_only,
    )
    return _created(name)


async def _upload_signed_cert(
    cert_type: CertType,
    body: SignedUploadRequest,
    storages: StorageMap,
    ca: CertificateAuthority,
) -> dict[str, str] | Response:
    async def action(signer: Certificate) -> str | None:
        return await ca.verify_and_store_cert(
            body.name,
            body.cert_contents,
            storages[cert_type],
            private_key_text=body.key_contents,
            signer=signer,
            create_ca_files=cert_type.is_signing,
            intermediate_only=body.intermediate_only,
        )

    return _created(await _with_signer(storages, body.signer, action))


@router.post("/intermediate/upload-cert-file", response_model=None)
async def upload_intermediate_cert(
    body: SignedUploadRequest,
    storages: StorageMap = Depends(get_storages),
    ca: CertificateAuthority = Depends(get_ca),
) -> dict[str, str] | Response:
    return await _upload_signed_cert(CertType.INTERMEDIATE, body, storages, ca)


@router.post("/server/upload-cert-file", response_model=None)
async def upload_server_cert(
    body: SignedUploadRequest,
    storages: StorageMap = Depends(get_storages),
    ca: CertificateAuthority = Depends(get_ca),
) -> dict[str, str] | Response:
    return await _upload_signed_cert(CertType.SERVER, body, storages, ca)


@router.post("/client/upload-cert-file", response_model=None)
async def upload_client_cert(
    body: SignedUploadRequest,
    storages: StorageMap = Depends(get_storages),
    ca: CertificateAuthority = Depends(get_ca),
) -> dict[str, str] | Response:
    return await _upload_signed_cert(CertType.CLIENT, body, storages, ca)


def create_app(storages: StorageMap, ca: CertificateAuthority) -> FastAPI:
    """Build the API application.

    Args:
        storages: One CertStorage per category
        ca: Certificate authority running the workflows
    """
    app = FastAPI(title="Mr. Cert")
    app.state.storages = dict(storages)
    app.state.ca = ca
    app.include_router(router)
    return app
