import threading
import time

import grpc
import pytest
from unittest.mock import patch

import ibm_vpc_block_csi.csi_types as types
from ibm_vpc_block_csi.exceptions import Abort, BackendError, ProviderError
from ibm_vpc_block_csi.parameters import REGION_LABEL, ZONE_LABEL
from ibm_vpc_block_csi.server import Controller, SNAPSHOT_DISABLED_DELAY

GiB = 1 << 30


class TestCreateVolume:

    def test_create_volume(self, create_volume, backend):
        volume = create_volume(name="v1", gib=20, zone="z1", region="r1")

        assert volume.capacity_bytes == 21474836480
        assert volume.volume_context["zone"] == "z1"
        assert volume.volume_context["region"] == "r1"
        assert volume.volume_context[ZONE_LABEL] == "z1"
        assert volume.volume_context["clusterID"] == "cluster-1"
        assert volume.volume_context["volumeId"] == volume.volume_id
        assert dict(volume.accessible_topology[0].segments) == {REGION_LABEL: "r1", ZONE_LABEL: "z1"}
        assert backend.volumes[volume.volume_id].status == "available"

    def test_create_volume_idempotent(self, create_volume, backend):
        first = create_volume(name="v1", gib=20)
        second = create_volume(name="v1", gib=20)

        assert first.volume_id == second.volume_id
        assert backend.calls["create_volume"] == 1

    def test_create_volume_incompatible_size(self, create_volume):
        create_volume(name="v1", gib=20)
        with pytest.raises(Abort) as ex_context:
            create_volume(name="v1", gib=30)

        err = ex_context.value
        assert err.code == grpc.StatusCode.ALREADY_EXISTS
        assert "VolumeAlreadyExists" in err.message

    def test_capacity_rounded_to_profile_minimum(self, create_volume):
        volume = create_volume(name="tiny", gib=1)
        assert volume.capacity_bytes == 10 * GiB

    def test_unknown_parameter(self, create_volume):
        with pytest.raises(Abort) as ex_context:
            create_volume(name="v1", colour="blue")

        err = ex_context.value
        assert err.code == grpc.StatusCode.INVALID_ARGUMENT
        assert "<colour> is an invalid parameter" in err.message

    def test_capacity_out_of_range(self, create_volume):
        with pytest.raises(Abort) as ex_context:
            create_volume(name="huge", gib=16001)
        assert ex_context.value.code == grpc.StatusCode.RESOURCE_EXHAUSTED

    @pytest.mark.parametrize("mode", [
        types.AccessModeType.MULTI_NODE_MULTI_WRITER,
        types.AccessModeType.SINGLE_NODE_READER_ONLY,
    ])
    def test_unsupported_access_mode(self, controller, volume_capabilities, mode):
        with pytest.raises(Abort) as ex_context:
            controller.CreateVolume(
                name="v1", volume_capabilities=volume_capabilities(mode=mode), parameters=dict(zone="z1", region="r1"),
            )
        assert ex_context.value.code == grpc.StatusCode.INVALID_ARGUMENT

    def test_missing_name(self, controller, volume_capabilities):
        with pytest.raises(Abort) as ex_context:
            controller.CreateVolume(name="", volume_capabilities=volume_capabilities(), request_id="req-1")

        err = ex_context.value
        assert err.code == grpc.StatusCode.INVALID_ARGUMENT
        assert "RequestID: req-1" in err.message
        assert "MissingVolumeName" in err.message

    def test_topology_fallback(self, controller, volume_capabilities):
        requirement = types.TopologyRequirement(
            preferred=[types.Topology(segments={REGION_LABEL: "eu-de", ZONE_LABEL: "eu-de-2"})]
        )
        resp = controller.CreateVolume(
            name="v1", volume_capabilities=volume_capabilities(), accessibility_requirements=requirement,
        )
        assert resp.volume.volume_context["zone"] == "eu-de-2"
        assert resp.volume.volume_context["region"] == "eu-de"

    def test_backend_failure(self, create_volume, backend):
        backend.fail["create_volume"].append(BackendError("vpc", code="volume_profile_not_found", http_status=400))
        with pytest.raises(Abort) as ex_context:
            create_volume(name="v1")

        err = ex_context.value
        assert err.code == grpc.StatusCode.INTERNAL
        assert "BackendError" in err.message
        assert backend.calls["create_volume"] == 1

    def test_unauthorized(self, create_volume, backend):
        backend.fail["create_volume"].append(ProviderError("AuthenticationFailed", "token rejected"))
        with pytest.raises(Abort) as ex_context:
            create_volume(name="v1")

        err = ex_context.value
        assert err.code == grpc.StatusCode.UNAUTHENTICATED
        assert backend.calls["create_volume"] == 1

    def test_from_snapshot(self, controller, create_volume, backend, volume_capabilities):
        source = create_volume(name="source")
        snapshot = backend.create_snapshot(dict(name="snap-1", source_volume=dict(id=source.volume_id)))
        content_source = types.VolumeContentSource(snapshot=types.SnapshotSource(snapshot_id=snapshot.crn))

        resp = controller.CreateVolume(
            name="restored",
            capacity_range=types.CapacityRange(required_bytes=20 * GiB),
            volume_capabilities=volume_capabilities(),
            parameters=dict(zone="us-south-1", region="us-south"),
            volume_content_source=content_source,
        )

        assert resp.volume.content_source.snapshot.snapshot_id == snapshot.crn
        assert backend.volumes[resp.volume.volume_id].source_snapshot.id == snapshot.id

    def test_from_other_account_snapshot(self, controller, backend, volume_capabilities):
        crn = "crn:v1:bluemix:public:is:us-south:a/ffff0000::snapshot:r006-snap0042-aaaa-bbbb-cccc"
        assert controller.ListSnapshots(snapshot_id=crn).entries[0].snapshot.ready_to_use

        with patch.object(backend, "create_volume", wraps=backend.create_volume) as m_create:
            resp = controller.CreateVolume(
                name="restored",
                capacity_range=types.CapacityRange(required_bytes=20 * GiB),
                volume_capabilities=volume_capabilities(),
                parameters=dict(zone="us-south-1", region="us-south"),
                volume_content_source=types.VolumeContentSource(snapshot=types.SnapshotSource(snapshot_id=crn)),
            )

        template = m_create.call_args.args[0]
        assert template["source_snapshot"] == dict(crn=crn)
        assert resp.volume.content_source.snapshot.snapshot_id == crn
        assert backend.volumes[resp.volume.volume_id].source_snapshot.id == "r006-snap0042-aaaa-bbbb-cccc"

    def test_from_missing_snapshot(self, controller, volume_capabilities):
        content_source = types.VolumeContentSource(snapshot=types.SnapshotSource(snapshot_id="r006-snap-gone-1-2-3"))
        with pytest.raises(Abort) as ex_context:
            controller.CreateVolume(
                name="restored",
                volume_capabilities=volume_capabilities(),
                parameters=dict(zone="us-south-1", region="us-south"),
                volume_content_source=content_source,
            )
        assert ex_context.value.code == grpc.StatusCode.NOT_FOUND


class TestDeleteVolume:

    def test_delete_twice(self, controller, create_volume, backend):
        volume = create_volume()

        controller.DeleteVolume(volume_id=volume.volume_id)
        controller.DeleteVolume(volume_id=volume.volume_id)

        assert volume.volume_id not in backend.volumes
        assert backend.calls["delete_volume"] == 1

    def test_delete_malformed_id(self, controller, backend):
        controller.DeleteVolume(volume_id="not-a-volume")
        assert backend.calls["get_volume"] == 0

    def test_delete_empty_id(self, controller):
        with pytest.raises(Abort) as ex_context:
            controller.DeleteVolume(volume_id="")
        assert ex_context.value.code == grpc.StatusCode.INVALID_ARGUMENT


class TestPublish:

    def test_publish(self, controller, create_volume, volume_capabilities):
        volume = create_volume(name="v1")

        resp = controller.ControllerPublishVolume(
            volume_id=volume.volume_id, node_id="n1", volume_capability=volume_capabilities()[0], request_id="req-9",
        )

        ctx = dict(resp.publish_context)
        assert ctx["volume-id"] == volume.volume_id
        assert ctx["node-id"] == "n1"
        assert ctx["attach-status"] == "attached"
        assert ctx["device-path"].startswith("/dev/disk/by-id/virtio-")
        assert len(ctx["device-path"]) == len("/dev/disk/by-id/virtio-") + 20
        assert ctx["request-id"] == "req-9"

    def test_concurrent_publish_same_node(self, controller, create_volume, volume_capabilities, backend):
        volume = create_volume(name="v1")
        results = []

        def publish():
            resp = controller.ControllerPublishVolume(
                volume_id=volume.volume_id, node_id="n1", volume_capability=volume_capabilities()[0],
            )
            results.append(resp.publish_context["device-path"])

        threads = [threading.Thread(target=publish) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 2
        assert results[0] == results[1]
        assert backend.calls["attach"] == 1

    def test_publish_serialized_per_node(self, controller, driver, create_volume, volume_capabilities, backend):
        v1, v2, v3 = (create_volume(name=name) for name in ("v1", "v2", "v3"))
        windows = []
        errors = []
        # one attach per node must be in flight at the same time
        both_nodes = threading.Barrier(2, timeout=5)
        original_attach = backend.attach

        def slow_attach(instance_id, volume_id):
            start = time.monotonic()
            if volume_id in (v1.volume_id, v3.volume_id):
                both_nodes.wait()
            time.sleep(0.05)
            windows.append((instance_id, start, time.monotonic()))
            return original_attach(instance_id, volume_id)

        backend.attach = slow_attach

        def publish(volume, node_id):
            try:
                controller.ControllerPublishVolume(
                    volume_id=volume.volume_id, node_id=node_id, volume_capability=volume_capabilities()[0],
                )
            except Exception as exc:
                errors.append(exc)

        threads = [
            threading.Thread(target=publish, args=args) for args in ((v1, "n1"), (v2, "n1"), (v3, "n2"))
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        assert len(driver.node_locks) == 2

        (_, start1, end1), (_, start2, end2) = sorted(w for w in windows if w[0] == "n1")
        assert end1 <= start2

        [(_, start3, end3)] = [w for w in windows if w[0] == "n2"]
        assert any(start < end3 and start3 < end for node, start, end in windows if node == "n1")

    def test_publish_missing_volume(self, controller, volume_capabilities):
        with pytest.raises(Abort) as ex_context:
            controller.ControllerPublishVolume(
                volume_id="r006-vol9999-aaaa-bbbb-cccc", node_id="n1", volume_capability=volume_capabilities()[0],
            )
        assert ex_context.value.code == grpc.StatusCode.NOT_FOUND

    def test_publish_empty_node(self, controller, volume_capabilities):
        with pytest.raises(Abort) as ex_context:
            controller.ControllerPublishVolume(
                volume_id="r006-vol9999-aaaa-bbbb-cccc", node_id="", volume_capability=volume_capabilities()[0],
            )
        assert ex_context.value.code == grpc.StatusCode.INVALID_ARGUMENT

    def test_attach_timeout(self, controller, create_volume, volume_capabilities, backend):
        volume = create_volume(name="v1")
        backend.get_attachment = lambda instance_id, attachment_id: backend.attached[attachment_id]

        with pytest.raises(Abort) as ex_context:
            controller.ControllerPublishVolume(
                volume_id=volume.volume_id, node_id="n1", volume_capability=volume_capabilities()[0],
            )

        err = ex_context.value
        assert err.code == grpc.StatusCode.DEADLINE_EXCEEDED

    def test_unpublish(self, controller, create_volume, volume_capabilities, backend):
        volume = create_volume(name="v1")
        controller.ControllerPublishVolume(
            volume_id=volume.volume_id, node_id="n1", volume_capability=volume_capabilities()[0],
        )

        controller.ControllerUnpublishVolume(volume_id=volume.volume_id, node_id="n1")

        assert not backend.attached
        assert backend.calls["detach"] == 1

    def test_unpublish_not_attached(self, controller, create_volume, backend):
        volume = create_volume(name="v1")
        controller.ControllerUnpublishVolume(volume_id=volume.volume_id, node_id="n1")
        assert backend.calls["detach"] == 0


class TestExpand:

    def test_expand(self, controller, create_volume, backend):
        volume = create_volume(name="v1", gib=20)

        resp = controller.ControllerExpandVolume(
            volume_id=volume.volume_id, capacity_range=types.CapacityRange(required_bytes=30 * GiB - 1),
        )

        assert resp.capacity_bytes == 30 * GiB
        assert resp.node_expansion_required
        assert backend.volumes[volume.volume_id].capacity == 30

    def test_expand_smaller(self, controller, create_volume, backend):
        volume = create_volume(name="v1", gib=20)

        resp = controller.ControllerExpandVolume(
            volume_id=volume.volume_id, capacity_range=types.CapacityRange(required_bytes=15 * GiB),
        )

        assert resp.capacity_bytes == 20 * GiB
        assert resp.node_expansion_required
        assert backend.calls["expand_volume"] == 0

    def test_expand_missing_volume(self, controller):
        with pytest.raises(Abort) as ex_context:
            controller.ControllerExpandVolume(
                volume_id="r006-vol9999-aaaa-bbbb-cccc", capacity_range=types.CapacityRange(required_bytes=GiB),
            )
        assert ex_context.value.code == grpc.StatusCode.NOT_FOUND


class TestValidateAndList:

    def test_validate_capabilities(self, controller, create_volume, volume_capabilities):
        volume = create_volume(name="v1")

        resp = controller.ValidateVolumeCapabilities(
            volume_id=volume.volume_id, volume_capabilities=volume_capabilities(),
        )
        assert resp.HasField("confirmed")

        resp = controller.ValidateVolumeCapabilities(
            volume_id=volume.volume_id,
            volume_capabilities=volume_capabilities(mode=types.AccessModeType.MULTI_NODE_MULTI_WRITER),
        )
        assert not resp.HasField("confirmed")

    def test_list_volumes_capped(self, controller, backend):
        for i in range(150):
            backend.create_volume(dict(name=f"vol-{i}", capacity=10, zone=dict(name="us-south-1")))

        resp = controller.ListVolumes(max_entries=150)

        assert len(resp.entries) == 100
        assert resp.next_token

        resp = controller.ListVolumes(starting_token=resp.next_token)
        assert len(resp.entries) == 50
        assert not resp.next_token

    def test_list_volumes_default_limit(self, controller, backend):
        for i in range(60):
            backend.create_volume(dict(name=f"vol-{i}", capacity=10, zone=dict(name="us-south-1")))

        resp = controller.ListVolumes()
        assert len(resp.entries) == 50

    def test_list_volumes_unknown_start(self, controller):
        with pytest.raises(Abort) as ex_context:
            controller.ListVolumes(starting_token="not-in-backend")
        assert ex_context.value.code == grpc.StatusCode.ABORTED

    def test_list_volumes_negative_limit(self, controller):
        with pytest.raises(Abort) as ex_context:
            controller.ListVolumes(max_entries=-1)
        assert ex_context.value.code == grpc.StatusCode.ABORTED

    def test_capabilities(self, controller):
        resp = controller.ControllerGetCapabilities()
        assert {c.rpc.type for c in resp.capabilities} == set(Controller.CAPABILITIES)

    @pytest.mark.parametrize("method", ["GetCapacity", "ControllerGetVolume", "ControllerModifyVolume"])
    def test_unimplemented(self, controller, method):
        with pytest.raises(Abort) as ex_context:
            getattr(controller, method)()
        assert ex_context.value.code == grpc.StatusCode.UNIMPLEMENTED


class TestSnapshots:

    def test_create_snapshot(self, controller, create_volume):
        volume = create_volume(name="v1")

        resp = controller.CreateSnapshot(name="snap-1", source_volume_id=volume.volume_id)

        assert resp.snapshot.source_volume_id == volume.volume_id
        assert resp.snapshot.snapshot_id.startswith("crn:v1:")
        assert resp.snapshot.ready_to_use
        assert resp.snapshot.size_bytes == 20 * GiB

    def test_create_snapshot_idempotent(self, controller, create_volume, backend):
        volume = create_volume(name="v1")

        first = controller.CreateSnapshot(name="snap-1", source_volume_id=volume.volume_id)
        second = controller.CreateSnapshot(name="snap-1", source_volume_id=volume.volume_id)

        assert first.snapshot.snapshot_id == second.snapshot.snapshot_id
        assert backend.calls["create_snapshot"] == 1

    def test_create_snapshot_other_source(self, controller, create_volume):
        v1 = create_volume(name="v1")
        v2 = create_volume(name="v2")
        controller.CreateSnapshot(name="snap-1", source_volume_id=v1.volume_id)

        with pytest.raises(Abort) as ex_context:
            controller.CreateSnapshot(name="snap-1", source_volume_id=v2.volume_id)
        assert ex_context.value.code == grpc.StatusCode.ALREADY_EXISTS

    def test_create_snapshot_failure_is_delayed(self, controller, create_volume, backend, driver):
        volume = create_volume(name="v1")
        backend.fail["create_snapshot"].append(BackendError("vpc", code="snapshots_not_authorized", http_status=403))

        with patch("ibm_vpc_block_csi.server.cancellable_sleep") as sleep:
            with pytest.raises(Abort) as ex_context:
                controller.CreateSnapshot(name="snap-1", source_volume_id=volume.volume_id)

        assert ex_context.value.code == grpc.StatusCode.INTERNAL
        sleep.assert_called_once_with(driver.config.snapshot_create_delay, None)

    @pytest.mark.parametrize("method, kwargs", [
        ("CreateSnapshot", dict(name="snap-1", source_volume_id="r006-vol0001-aaaa-bbbb-cccc")),
        ("DeleteSnapshot", dict(snapshot_id="r006-snap0001-aaaa-bbbb-cccc")),
        ("ListSnapshots", dict()),
    ])
    def test_snapshots_disabled(self, controller, monkeypatch, backend, method, kwargs):
        monkeypatch.setenv("IS_SNAPSHOT_ENABLED", "false")

        with patch("ibm_vpc_block_csi.server.cancellable_sleep") as sleep:
            with pytest.raises(Abort) as ex_context:
                getattr(controller, method)(**kwargs)

        assert ex_context.value.code == grpc.StatusCode.UNIMPLEMENTED
        assert sleep.call_args[0][0] >= SNAPSHOT_DISABLED_DELAY
        assert not backend.calls

    def test_delete_missing_snapshot(self, controller):
        resp = controller.DeleteSnapshot(snapshot_id="sn-404")
        assert resp == types.DeleteSnapResp()

    def test_delete_snapshot_retrieval_failed(self, controller, backend):
        backend.fail["get_snapshot"].extend(
            BackendError("vpc", code="internal_error", http_status=500) for _ in range(10)
        )
        resp = controller.DeleteSnapshot(snapshot_id="sn-404")
        assert resp == types.DeleteSnapResp()
        assert backend.calls["delete_snapshot"] == 0

    def test_delete_snapshot(self, controller, create_volume, backend):
        volume = create_volume(name="v1")
        snapshot = controller.CreateSnapshot(name="snap-1", source_volume_id=volume.volume_id).snapshot

        controller.DeleteSnapshot(snapshot_id=snapshot.snapshot_id)

        assert not backend.snapshots

    def test_list_snapshot_by_id(self, controller, create_volume):
        volume = create_volume(name="v1")
        snapshot = controller.CreateSnapshot(name="snap-1", source_volume_id=volume.volume_id).snapshot

        resp = controller.ListSnapshots(snapshot_id=snapshot.snapshot_id)

        assert [e.snapshot.snapshot_id for e in resp.entries] == [snapshot.snapshot_id]

    def test_list_snapshot_other_account(self, controller, backend):
        crn = "crn:v1:bluemix:public:is:us-south:a/ffff0000::snapshot:r006-snap0042-aaaa-bbbb-cccc"

        resp = controller.ListSnapshots(snapshot_id=crn)

        assert len(resp.entries) == 1
        assert resp.entries[0].snapshot.snapshot_id == crn
        assert resp.entries[0].snapshot.ready_to_use
        assert backend.calls["get_snapshot"] == 0

    def test_list_snapshot_missing(self, controller):
        resp = controller.ListSnapshots(snapshot_id="r006-snap0042-aaaa-bbbb-cccc")
        assert not resp.entries

    def test_list_snapshots_by_source(self, controller, create_volume):
        v1 = create_volume(name="v1")
        v2 = create_volume(name="v2")
        controller.CreateSnapshot(name="snap-1", source_volume_id=v1.volume_id)
        controller.CreateSnapshot(name="snap-2", source_volume_id=v2.volume_id)

        resp = controller.ListSnapshots(source_volume_id=v2.volume_id)

        assert [e.snapshot.source_volume_id for e in resp.entries] == [v2.volume_id]

    def test_list_snapshots_unknown_start(self, controller):
        with pytest.raises(Abort) as ex_context:
            controller.ListSnapshots(starting_token="not-in-backend")
        assert ex_context.value.code == grpc.StatusCode.ABORTED
