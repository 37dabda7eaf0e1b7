from .factory import create_custodian_gateway
from .gateway import CustodianGateway, HttpCustodianGateway, custodian_holding, sign_request
from .models import (
    CustodianBalance,
    CustodianTransferStatus,
    InitiateResponse,
    StatusResponse,
    SubmitResponse,
    TransferRequest,
)
from .simulated import SimulatedCustodianGateway

__all__ = [
    "CustodianBalance",
    "CustodianGateway",
    "CustodianTransferStatus",
    "HttpCustodianGateway",
    "InitiateResponse",
    "SimulatedCustodianGateway",
    "StatusResponse",
    "SubmitResponse",
    "TransferRequest",
    "create_custodian_gateway",
    "custodian_holding",
    "sign_request",
]
