from campus_market import create_app
from campus_market.celery_app import create_celery_app

flask_app = create_app()
celery = create_celery_app(flask_app)
