"""Rule storage backends."""
