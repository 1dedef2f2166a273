"""Command line interface for testing configuration loading"""
from . import settings_conf
from pathlib import Path

SECRET_KEYS = ('jwt_secret', 'payos_api_key', 'payos_checksum_key')

def main():
    """Display loaded configuration"""
    print("\nSettings Configuration:")
    print("-" * 50)
    for key, value in settings_conf.items():
        if key in SECRET_KEYS and value:
            value = '********'
        print(f"{key}: {value}")

    # Save example configuration file
    examples_dir = Path("examples")
    examples_dir.mkdir(exist_ok=True)

    with open(examples_dir / "settings.conf.example", "w") as f:
        f.write("""[DEFAULT]
# Storage: memory:// for a single in-process store, or a PostgreSQL URL
db_url = postgresql://root@localhost:26257/dealroom?sslmode=disable

# Bearer tokens are issued by the identity service and verified here
jwt_secret = change-me
jwt_algorithm = HS256

# Payment gateway: sandbox or payos
gateway = payos
payos_client_id = your-client-id
payos_api_key = your-api-key
payos_checksum_key = your-checksum-key
payos_return_url = dealroom://payment-success
payos_cancel_url = dealroom://payment-cancel
gateway_timeout = 10
payment_link_ttl_minutes = 15
min_payment_amount = 1000

transaction_code_length = 8
allow_manual_confirmation_for_paid = true
reconcile_interval = 60

# Read-only item catalog used for message previews
catalog_url = http://localhost:9000
catalog_timeout = 5

api_host = 0.0.0.0
api_port = 8000
""")

if __name__ == "__main__":
    main()
