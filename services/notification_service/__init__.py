"""Receipt email delivery."""
