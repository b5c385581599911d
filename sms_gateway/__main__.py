from sms_gateway.server import run

run()
