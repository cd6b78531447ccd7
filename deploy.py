# deploy.py - release steps for the billing service, and the scheduled billing commands
#
#   python deploy.py          migrate (and serve in dev) for DEVELOPMENT_MODE=dev|prod
#   python deploy.py cron     run each scheduled billing command once
import os
import sys
from dotenv import load_dotenv

load_dotenv()

DEVELOPMENT_MODE = os.getenv("DEVELOPMENT_MODE", "dev").lower()

RELEASE = {
    "dev": ["migrate", "runserver 0.0.0.0:8000"],
    "prod": ["check --deploy", "migrate --noinput"],
}
# Each is safe to re-run from cron
SCHEDULED = ["run_billing_jobs", "renew_subscriptions", "cleanup_audit_log"]


def manage(args):
    cmd = f"{sys.executable} manage.py {args}"
    print("> " + cmd)
    rc = os.system(cmd)
    if rc != 0:
        print("Command failed:", cmd)
        sys.exit(1)


def main(argv):
    if argv[1:] == ["cron"]:
        steps = SCHEDULED
    else:
        mode = {"development": "dev", "production": "prod"}.get(DEVELOPMENT_MODE, DEVELOPMENT_MODE)
        if mode not in RELEASE:
            print("Unknown DEVELOPMENT_MODE:", DEVELOPMENT_MODE, "(use 'dev' or 'prod')")
            sys.exit(1)
        steps = RELEASE[mode]
    for step in steps:
        manage(step)


if __name__ == "__main__":
    main(sys.argv)
