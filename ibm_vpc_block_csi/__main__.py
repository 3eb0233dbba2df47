import os
import sys
import argparse
from easypy.bunch import Bunch

# Settings that are safe to print (no api keys)
PUBLIC_SETTINGS = (
    "endpoint_url", "iam_url", "auth_type", "resource_group_id", "api_version", "provider_type",
    "timeout", "iks_enabled", "iks_endpoint_url",
)


def main():
    parser = argparse.ArgumentParser(
        description="IBM VPC Block CSI Driver")
    parser.set_defaults(func=lambda *_, **__: parser.print_help())

    subparsers = parser.add_subparsers()

    serve_parse = subparsers.add_parser("serve", help='Start the CSI Driver Server (not for humans)')
    serve_parse.add_argument("--endpoint", default="unix:/tmp/csi.sock", help="CSI endpoint")
    serve_parse.add_argument("--metrics-address", default="0.0.0.0:9080", help="Metrics endpoint (host:port)")
    serve_parse.add_argument("--log-level", help="Overrides CSI_LOG_LEVEL")
    serve_parse.set_defaults(func=_serve)

    info_parse = subparsers.add_parser("info", help='Print versioning information for this CSI driver')
    info_parse.add_argument("--output", default="json", choices=['json', 'yaml'], help="Output format")
    info_parse.set_defaults(func=_info)

    check_parse = subparsers.add_parser("check-config", help='Load the cloud configuration and print it')
    check_parse.add_argument("--output", default="yaml", choices=['json', 'yaml'], help="Output format")
    check_parse.set_defaults(func=_check_config)

    test_parse = subparsers.add_parser("test", help='Start unit tests')
    test_parse.set_defaults(func=_test)

    args = parser.parse_args(namespace=Bunch())
    args.pop("func")(args)


def _dump(data, output):
    if output == "yaml":
        import yaml
        yaml.safe_dump(data, sys.stdout, default_flow_style=False)
    elif output == "json":
        import json
        json.dump(data, sys.stdout, indent=2)
    else:
        assert False, f"invalid output format: {output}"


def _info(args):
    from . configuration import Config
    conf = Config()
    _dump(dict(name=conf.driver_name, version=conf.driver_version, commit=conf.git_commit), args.output)


def _check_config(args):
    from . configuration import Config
    from . exceptions import CredentialsError
    conf = Config()
    try:
        settings = conf.cloud
    except CredentialsError as exc:
        sys.exit(exc.render(color=False))
    _dump(dict(
        {k: settings[k] for k in PUBLIC_SETTINGS},
        cluster_id=conf.cluster_id,
        snapshots=conf.snapshot_enabled,
    ), args.output)


def _test(args):
    """Runs the tests without code coverage"""
    import pytest
    sys.exit(pytest.main(["-x", "tests", "-s", "-v"]))


def _serve(args):
    if args.log_level:
        os.environ["CSI_LOG_LEVEL"] = args.log_level
    from . server import serve
    return serve(args.endpoint, args.metrics_address)


if __name__ == '__main__':
    main()
