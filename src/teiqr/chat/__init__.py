"""Chat turn pipeline."""
