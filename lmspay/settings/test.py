from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

ALLOWED_HOSTS = ['testserver']

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'

PAYMENTS = {
    **PAYMENTS,
    'GATEWAY_PRIORITY': ['cashfree', 'razorpay', 'hdfc'],
    'GATEWAYS': {
        'cashfree': {
            'ENABLED': True,
            'APP_ID': 'cf-app',
            'SECRET_KEY': 'cf-secret',
            'API_VERSION': '2023-08-01',
            'BASE_URL': 'https://sandbox.cashfree.test/pg',
            'RETURN_URL': 'https://lms.test/payments/return',
            'NOTIFY_URL': 'https://lms.test/webhooks/cashfree',
        },
        'razorpay': {
            'ENABLED': True,
            'KEY_ID': 'rzp_test',
            'KEY_SECRET': 'rzp-secret',
            'WEBHOOK_SECRET': 'rzp-whsec',
            'BASE_URL': 'https://api.razorpay.test/v1',
        },
        'hdfc': {
            'ENABLED': False,
            'BASE_URL': 'https://smartgateway.hdfc.test',
            'MERCHANT_ID': 'MID1',
            'API_KEY': 'hdfc-key',
            'CLIENT_ID': 'hdfcmaster',
            'RESELLER_ID': 'hdfc_reseller',
            'RETURN_URL': 'https://lms.test/payments/return',
            'PRIVATE_KEY_PATH': '',
            'KEY_UUID': '',
            'WEBHOOK_BASIC_USER': 'hook',
            'WEBHOOK_BASIC_PASS': 'hook-pass',
        },
    },
    'RETRY_BACKOFF_BASE_SECONDS': 60,
    'RETRY_BACKOFF_CAP_SECONDS': 600,
    'MAX_ATTEMPTS': 3,
    'WEBHOOK_TOLERANCE_SECONDS': None,
    'ADMIN_EMAILS': 'ops@lms.test',
}
