import sys
from pathlib import Path

import grpc

# Modules are generated from csi.proto at import time (grpcio-tools), the proto path
# is resolved against sys.path.
ROOT = Path(__file__).resolve().parents[2].as_posix()
if ROOT not in sys.path:
    sys.path.append(ROOT)

csi_pb2, csi_pb2_grpc = grpc.protos_and_services("ibm_vpc_block_csi/proto/csi.proto")
