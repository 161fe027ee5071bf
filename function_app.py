import azure.functions as func
from dotenv import load_dotenv

# Load local .env for dev convenience (local.settings.json is handled by Functions host)
load_dotenv()

from shared.db import init_db  # noqa: E402

# Create the SQL tables once when the Functions host starts
init_db()

app = func.FunctionApp()

# Import endpoint modules so their routes register with the shared app.
import health_endpoints  # noqa: E402,F401
import crm_endpoints  # noqa: E402,F401
import notification_endpoints  # noqa: E402,F401
import tag_endpoints  # noqa: E402,F401
import webhook_endpoints  # noqa: E402,F401
import billing_endpoints  # noqa: E402,F401
import backup_endpoints  # noqa: E402,F401
import sms_endpoints  # noqa: E402,F401
import lead_assignment_endpoints  # noqa: E402,F401
