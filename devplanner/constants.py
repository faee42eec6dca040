"""
Workspace layout constants.

    <workspace>/<project-slug>/_project.json
    <workspace>/<project-slug>/<lane-slug>/_order.json
    <workspace>/<project-slug>/<lane-slug>/<card-slug>.md
    <workspace>/<project-slug>/_files.json
    <workspace>/<project-slug>/_files/<filename>
"""

PROJECT_FILE = "_project.json"
ORDER_FILE = "_order.json"
HISTORY_FILE = "_history.json"
HISTORY_ARCHIVE_FILE = "_history.archive.json"
PREFERENCES_FILE = "_preferences.json"
FILES_MANIFEST = "_files.json"
FILES_DIR = "_files"
CARD_SUFFIX = ".md"

TASKS_HEADING = "## Tasks"


class Lane:
    """Canonical lane directory names."""
    UPCOMING = "01-upcoming"
    IN_PROGRESS = "02-in-progress"
    COMPLETE = "03-complete"
    ARCHIVE = "04-archive"


ALL_LANES = [Lane.UPCOMING, Lane.IN_PROGRESS, Lane.COMPLETE, Lane.ARCHIVE]

DEFAULT_LANE = Lane.UPCOMING

# Lane slug -> {displayName, color, collapsed}
DEFAULT_LANE_CONFIG = {
    Lane.UPCOMING: {"displayName": "Upcoming", "color": "#6b7280", "collapsed": False},
    Lane.IN_PROGRESS: {"displayName": "In Progress", "color": "#3b82f6", "collapsed": False},
    Lane.COMPLETE: {"displayName": "Complete", "color": "#22c55e", "collapsed": True},
    Lane.ARCHIVE: {"displayName": "Archive", "color": "#9ca3af", "collapsed": True},
}

DEFAULT_PORT = 17103
DEFAULT_WS_PORT = 17104
