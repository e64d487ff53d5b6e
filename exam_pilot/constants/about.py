"""Static metadata describing Exam Pilot."""

APP_NAME = "Exam Pilot"
APP_VERSION = "0.1.0"
APP_LICENSE = "MIT License"
APP_ABOUT_TEXT = (
    "Exam Pilot watches a remote desktop session, detects exam questions on screen, "
    "looks answers up in a knowledge base (optionally the web), reasons about the rest "
    "with a language model and clicks or types the chosen answer. Whenever it is unsure "
    "it hands control back to the operator."
)
