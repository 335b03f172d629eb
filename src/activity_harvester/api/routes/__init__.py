"""Route modules mounted under ``/api`` by :func:`activity_harvester.api.main.create_app`."""
