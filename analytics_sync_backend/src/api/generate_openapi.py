import argparse
import json
import os

from src.api.main import app

DEFAULT_OUTPUT = os.path.join("interfaces", "openapi.json")


# PUBLIC_INTERFACE
def generate_openapi_to_file(path: str = DEFAULT_OUTPUT) -> str:
    """Write the OpenAPI schema of the sync API (common connector routes plus provider routers) to ``path``."""
    schema = app.openapi()
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w") as f:
        json.dump(schema, f, indent=2)
    return path


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Export the analytics sync OpenAPI schema")
    parser.add_argument("--output", default=DEFAULT_OUTPUT, help="Destination file")
    print(generate_openapi_to_file(parser.parse_args().output))
