import sys
import argparse
from easypy.bunch import Bunch


def main():
    parser = argparse.ArgumentParser(
        description="TrueNAS CSI Plugin")
    parser.set_defaults(func=lambda *_, **__: parser.print_help())

    subparsers = parser.add_subparsers()

    serve_parse = subparsers.add_parser("serve", help='Start the CSI Plugin Server (not for humans)')
    serve_parse.set_defaults(func=_serve)

    info_parse = subparsers.add_parser("info", help='Print versioning information for this CSI plugin')
    info_parse.add_argument("--output", default="json", choices=['json', 'yaml'], help="Output format")
    info_parse.set_defaults(func=_info)

    check_parse = subparsers.add_parser("check-config", help='Validate the controller configuration file')
    check_parse.add_argument("path", nargs="?", help="Configuration file (default: $X_CSI_CONTROLLER_CONFIG)")
    check_parse.set_defaults(func=_check_config)

    test_parse = subparsers.add_parser("test", help='Start unit tests')
    test_parse.set_defaults(func=_test)

    args = parser.parse_args(namespace=Bunch())
    args.pop("func")(args)


def _info(args):
    from . configuration import Config
    conf = Config()
    info = dict(name=conf.plugin_name, version=conf.plugin_version, mode=conf.mode.lower())
    if args.output == "yaml":
        import yaml
        yaml.dump(info, sys.stdout)
    elif args.output == "json":
        import json
        json.dump(info, sys.stdout)
    else:
        assert False, f"invalid output format: {args.output}"


def _check_config(args):
    from . configuration import Config
    from . backends import load_backends
    from . exceptions import ConfigurationError
    path = args.path or Config().controller_config
    try:
        resolver = load_backends(path)
    except ConfigurationError as exc:
        print(exc.render(color=False), file=sys.stderr)
        sys.exit(1)
    for name, backend in sorted(resolver.backends.items()):
        for config in backend.configurations.values():
            protocols = [p for p in ("nfs", "iscsi") if getattr(config, p)]
            print(f"{name}/{config.name}: {config.dataset} "
                  f"(delete policy: {config.delete_policy.lower()}, protocols: {', '.join(protocols) or 'none'})")


def _test(args):
    """Runs the tests without code coverage"""
    import pytest
    sys.exit(pytest.main(["-x", "tests", "-s", "-v"]))


def _serve(args):
    from . server import serve
    return serve()


if __name__ == '__main__':
    main()
