from datetime import datetime, timezone

HELP = (
    "👋 Welcome to Facebook Number Checker Bot!\n\n"
    "Commands:\n"
    "/upload - Upload numbers.txt file\n"
    "/status - Check current job status\n"
    "/results - Download results\n"
    "/cancel - Cancel current job\n"
    "/help - Show this help"
)

UPLOAD = "Please send me a `numbers.txt` file containing one phone number per line."

NO_ACTIVE_JOB = "No active job found. Use /upload to start one."
NO_JOB = "No job found."
RESULTS_NOT_READY = "Results not ready yet. Check /status."
NOTHING_TO_CANCEL = "No active job to cancel."
CANCELLED = "✅ Job cancelled."
UNKNOWN = "Unknown command. Type /help for available commands."
FAILURE = "⚠️ Something went wrong, please try again in a moment."


def rejected(reason):
    return f"❌ {reason}"


def accepted(job_id, count):
    return (
        f"✅ File accepted! Found {count} valid numbers.\n"
        f"Job ID: `{job_id}`\n"
        "Processing will begin shortly. Use /status to check progress."
    )


def already_finished(status):
    return f"Job already {status}, nothing to cancel."


def results_caption(job_id):
    return f"Results for job {job_id}"


def status(job):
    updated = datetime.fromtimestamp(job.updated_at, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    return (
        "📊 *Job Status*\n"
        f"Job ID: `{job.id}`\n"
        f"Status: *{job.status.value}*\n"
        f"Progress: {job.processed}/{job.total} ({job.percent}%)\n"
        f"✅ Valid (OTP sent): {job.valid}\n"
        f"❌ Invalid (not found): {job.invalid}\n"
        f"👥 Multi-account: {job.multi_account}\n"
        f"⚠️ Errors (CAPTCHA/other): {job.errors}\n"
        f"Last update: {updated} UTC"
    )
