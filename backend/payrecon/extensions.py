# Overview: Flask extension instances for database, migrations and the payment gateway.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

from .services.gateway_client import PaymentGateway

db = SQLAlchemy()
migrate = Migrate()
gateway = PaymentGateway()
