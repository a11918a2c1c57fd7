from kiln.api.routes import admin, checkout, products, webhooks
