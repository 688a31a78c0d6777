"""
Application Insights integration for monitoring and telemetry.
"""
import os
import logging
from typing import Optional
from opencensus.ext.azure import metrics_exporter
from opencensus.ext.azure.log_exporter import AzureLogHandler
from opencensus.stats import aggregation as aggregation_module
from opencensus.stats import measure as measure_module
from opencensus.stats import stats as stats_module
from opencensus.stats import view as view_module
from opencensus.tags import tag_map as tag_map_module


class AppInsights:
    """Application Insights telemetry client."""

    def __init__(self, connection_string: Optional[str] = None):
        """Initialize Application Insights if connection string is available."""
        self.connection_string = connection_string or os.getenv("APPLICATIONINSIGHTS_CONNECTION_STRING")
        self.enabled = bool(self.connection_string)

        if self.enabled:
            self._setup_logging()
            self._setup_metrics()
        else:
            logging.info("Application Insights not configured (missing connection string)")

    def _setup_logging(self):
        """Forward the pixelmap logger to Azure."""
        logger = logging.getLogger("pixelmap")
        logger.addHandler(AzureLogHandler(connection_string=self.connection_string))
        logging.info("Application Insights logging enabled")

    def _setup_metrics(self):
        self.stats = stats_module.stats
        self.view_manager = self.stats.view_manager

        self.memories_placed = measure_module.MeasureInt(
            "memories_placed",
            "Number of memories placed on the map",
            "memories"
        )

        self.sprites_generated = measure_module.MeasureInt(
            "sprites_generated",
            "Number of pixel-art sprites generated",
            "sprites"
        )

        self.generation_failures = measure_module.MeasureInt(
            "generation_failures",
            "Number of failed sprite generations",
            "requests"
        )

        self.geocode_fallbacks = measure_module.MeasureInt(
            "geocode_fallbacks",
            "Number of reverse geocodes that fell back to a generic label",
            "requests"
        )

        self.generation_time = measure_module.MeasureFloat(
            "generation_time",
            "Sprite generation time",
            "seconds"
        )

        views = [
            view_module.View("memories_placed_view", "Total memories placed", [],
                             self.memories_placed, aggregation_module.CountAggregation()),
            view_module.View("sprites_generated_view", "Total sprites generated", [],
                             self.sprites_generated, aggregation_module.CountAggregation()),
            view_module.View("generation_failures_view", "Total generation failures", [],
                             self.generation_failures, aggregation_module.CountAggregation()),
            view_module.View("geocode_fallbacks_view", "Total geocode fallbacks", [],
                             self.geocode_fallbacks, aggregation_module.CountAggregation()),
            view_module.View("generation_time_view", "Last sprite generation time", [],
                             self.generation_time, aggregation_module.LastValueAggregation()),
        ]
        for view in views:
            self.view_manager.register_view(view)

        exporter = metrics_exporter.new_metrics_exporter(
            connection_string=self.connection_string
        )
        self.view_manager.register_exporter(exporter)

        logging.info("Application Insights metrics enabled")

    def _record_int(self, measure, count: int):
        mmap = self.stats.stats_recorder.new_measurement_map()
        mmap.measure_int_put(measure, count)
        mmap.record(tag_map_module.TagMap())

    def track_memory_placed(self):
        if self.enabled:
            self._record_int(self.memories_placed, 1)
            logging.info("Tracked: memory placed")

    def track_sprite_generated(self, seconds: float):
        """Track a successful generation and how long it took."""
        if self.enabled:
            self._record_int(self.sprites_generated, 1)
            mmap = self.stats.stats_recorder.new_measurement_map()
            mmap.measure_float_put(self.generation_time, seconds)
            mmap.record(tag_map_module.TagMap())
            logging.info(f"Tracked: sprite generated in {seconds:.2f}s")

    def track_generation_failure(self):
        if self.enabled:
            self._record_int(self.generation_failures, 1)
            logging.info("Tracked: generation failure")

    def track_geocode_fallback(self):
        if self.enabled:
            self._record_int(self.geocode_fallbacks, 1)
            logging.info("Tracked: geocode fallback")

    def track_event(self, event_name: str, properties: Optional[dict] = None):
        """Track custom event."""
        if self.enabled:
            props = properties or {}
            logging.info(f"Event: {event_name}", extra={"custom_dimensions": props})

    def track_exception(self, exception: Exception):
        """Track exception."""
        if self.enabled:
            logging.exception(f"Exception occurred: {str(exception)}")


# Global instance
app_insights = AppInsights()
