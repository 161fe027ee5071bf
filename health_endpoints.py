import azure.functions as func
from function_app import app
from crm_shared import json_response
from shared.config import get_app_environment, get_storage_connection_string
from utils.cors import build_cors_headers


@app.function_name(name="HealthApi")
@app.route(route="health", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def health_api(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return json_response(
        {
            "status": "ok",
            "environment": get_app_environment(),
            "documentStore": "azure" if get_storage_connection_string() else "memory",
        },
        status_code=200,
        cors=cors,
    )
