from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from apscheduler.schedulers.background import BackgroundScheduler
import atexit
import logging

db = SQLAlchemy()
scheduler = None

logger = logging.getLogger(__name__)


def create_app(config_class='config.Config'):
    app = Flask(__name__)
    app.config.from_object(config_class)

    db.init_app(app)

    from api import bp
    app.register_blueprint(bp)

    with app.app_context():
        from allocation import run_dispatch_for_all_tenants

        def scheduled_dispatch():
            with app.app_context():
                run_dispatch_for_all_tenants()

        global scheduler
        if app.config["SCHEDULER_ENABLED"] and not scheduler:
            scheduler = BackgroundScheduler()
            scheduler.add_job(
                func=scheduled_dispatch,
                trigger="interval",
                seconds=app.config["DISPATCH_INTERVAL_SECONDS"],
                max_instances=1,
                coalesce=True,
            )
            scheduler.start()
            logger.info(f"Dispatch scheduler started (every {app.config['DISPATCH_INTERVAL_SECONDS']}s)")
            # Shut down the scheduler when exiting the app
            atexit.register(lambda: scheduler.shutdown())

    return app
