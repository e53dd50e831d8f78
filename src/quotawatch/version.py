from importlib.metadata import PackageNotFoundError, version

# bumped when a route or a response shape changes incompatibly
API_CONTRACT_VERSION = "1"


def agent_version() -> "str":
    try:
        return version("quotawatch")
    except PackageNotFoundError:
        # running from a source checkout that was never installed
        return "0.0.0+unknown"
