"""dropcron — cluster-safe recurring task scheduler for plugin-driven CMS workers."""
