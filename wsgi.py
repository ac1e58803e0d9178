from fulfillment import create_app

app = create_app()

# Run with a single scheduler process, e.g.:
#   IS_SCHEDULER=1 gunicorn -w 1 wsgi:app        (sweeper runs here)
#   gunicorn -w 4 wsgi:app                       (web workers, no sweeper)
