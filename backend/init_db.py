"""Initialize database with a sample experiment."""
import sys

from abengine.config import get_settings
from abengine.database import SessionLocal, engine, Base
from abengine.schemas.experiment import AllocationStrategy, AllocationType, ExperimentCreate, MetricName, Variant
from abengine.services.errors import ExperimentError
from abengine.services.experiments import build_experiment_service

SAMPLE_EXPERIMENT_ID = "checkout_button_jan2024"


def init_database():
    """Create tables and a running sample experiment."""
    print("Creating database tables...")
    Base.metadata.create_all(bind=engine)

    service = build_experiment_service(get_settings(), SessionLocal)

    try:
        if service.store.get_experiment(SAMPLE_EXPERIMENT_ID):
            print("✓ Database already initialized")
            return

        print("\nCreating sample experiment...")
        experiment = service.create_experiment(ExperimentCreate(
            id=SAMPLE_EXPERIMENT_ID,
            name="Checkout button color",
            variants=[
                Variant(id="control", name="Blue", weight=34, is_control=True, config={"color": "#0057ff"}),
                Variant(id="green", name="Green", weight=33, config={"color": "#00a650"}),
                Variant(id="orange", name="Orange", weight=33, config={"color": "#ff7a00"})
            ],
            metrics=[MetricName.CONVERSION_RATE, MetricName.AVERAGE_ORDER_VALUE],
            sample_size=1000,
            allocation=AllocationStrategy(type=AllocationType.BANDIT)
        ))
        service.start_experiment(experiment.id)
        print(f"✓ Created and started experiment: {experiment.id}")

        print("\n" + "="*50)
        print("✓ Database initialized successfully!")
        print("="*50)
        print("Try an assignment with curl:")
        print(
            f"  curl -X POST -H 'Content-Type: application/json' -d '{{\"user_id\": \"user_123\"}}' "
            f"http://localhost:8000/experiments/{experiment.id}/assign"
        )
        print("\n" + "="*50)

    except ExperimentError as e:
        print(f"✗ Error initializing database: {e}")
        sys.exit(1)


if __name__ == "__main__":
    init_database()
