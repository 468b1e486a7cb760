"""Reference FoodJourney API used for development and tests."""
