from unittest.mock import MagicMock, patch

import grpc
import pytest

import ibm_vpc_block_csi.csi_types as types
from ibm_vpc_block_csi.exceptions import UserError, ProviderError
from ibm_vpc_block_csi.proto import csi_pb2
from ibm_vpc_block_csi.server import Instrumented, Identity, parse_endpoint, user_error


class _Base:
    def CreateVolume(self, request, context):
        raise NotImplementedError()


class EchoServicer(_Base, Instrumented):

    def CreateVolume(self, name, parameters=None, request_id="", secrets=None):
        if name == "broken":
            raise UserError("VolumeCreationFailed", request_id, args=(name,))
        return types.CreateResp(
            volume=types.Volume(
                volume_id=request_id, volume_context=dict(secrets or {}, **(parameters or {})),
            )
        )


class AbortCalled(Exception):
    pass


@pytest.fixture
def context():
    context = MagicMock()
    context.peer.return_value = "ipv4:127.0.0.1:5000"
    context.abort.side_effect = AbortCalled
    return context


@pytest.fixture
def m_record():
    with patch("ibm_vpc_block_csi.server.record_request") as m:
        yield m


class TestInstrumented:

    def test_injects_request_id_and_secrets(self, context, m_record):
        request = csi_pb2.CreateVolumeRequest(name="pvc-1", parameters=dict(zone="z"), secrets=dict(key="v"))

        resp = EchoServicer().CreateVolume(request, context)

        assert len(resp.volume.volume_id) == 36
        assert dict(resp.volume.volume_context) == dict(key="v", zone="z")
        method, status, latency = m_record.call_args.args
        assert (method, status) == ("CreateVolume", "OK")
        assert latency >= 0

    def test_missing_required_field(self, context, m_record):
        with pytest.raises(AbortCalled):
            EchoServicer().CreateVolume(csi_pb2.CreateVolumeRequest(), context)

        code, message = context.abort.call_args.args
        assert code == grpc.StatusCode.INVALID_ARGUMENT
        assert message == "Missing required fields: name"
        assert m_record.call_args.args[1] == "INVALID_ARGUMENT"

    def test_user_error(self, context, m_record):
        with pytest.raises(AbortCalled):
            EchoServicer().CreateVolume(csi_pb2.CreateVolumeRequest(name="broken"), context)

        code, message = context.abort.call_args.args
        assert code == grpc.StatusCode.INTERNAL
        assert "Code: VolumeCreationFailed" in message
        assert m_record.call_args.args[1] == "INTERNAL"


class TestIdentity:

    def test_plugin_info(self, driver):
        resp = Identity(driver).GetPluginInfo(None, None)
        assert resp.name == "vpc.block.csi.ibm.io"
        assert resp.vendor_version == driver.version

    def test_capabilities(self, driver):
        resp = Identity(driver).GetPluginCapabilities(None, None)
        assert {c.service.type for c in resp.capabilities} == set(Identity.CAPABILITIES)

    def test_probe(self, driver):
        assert Identity(driver).Probe(None, None).ready.value


@pytest.mark.parametrize("kind, code, status", [
    ("AuthenticationFailed", "AuthenticationFailed", grpc.StatusCode.UNAUTHENTICATED),
    ("Timeout", "Timeout", grpc.StatusCode.DEADLINE_EXCEEDED),
    ("EndpointNotReachable", "EndpointNotReachable", grpc.StatusCode.UNAVAILABLE),
    ("FailedToPlaceOrder", "VolumeCreationFailed", grpc.StatusCode.INTERNAL),
])
def test_user_error_for_provider_failures(kind, code, status):
    err = user_error(ProviderError(kind, "iam token"), "req-1", "VolumeCreationFailed")
    assert (err.msg_code, err.code) == (code, status)
    assert "RequestID: req-1" in err.message


@pytest.mark.parametrize("endpoint, expected", [
    ("unix:/csi/csi.sock", "/csi/csi.sock"),
    ("unix:///csi/csi.sock", "/csi/csi.sock"),
    ("tcp:0.0.0.0:10000", None),
])
def test_parse_endpoint(endpoint, expected):
    assert parse_endpoint(endpoint) == expected


def test_record_request():
    from prometheus_client import REGISTRY
    from ibm_vpc_block_csi.metrics import record_request

    labels = dict(method="NodeGetInfo", status="OK")
    before = REGISTRY.get_sample_value("csi_request_total", labels) or 0
    record_request("NodeGetInfo", "OK", 0.2)
    assert REGISTRY.get_sample_value("csi_request_total", labels) == before + 1
