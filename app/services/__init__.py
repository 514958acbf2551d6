# Services layer: quote aggregation and caching
