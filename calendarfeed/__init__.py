"""calendarfeed - fetches ICS calendar feeds and turns them into paged event lists.

Imports are kept light so the package can be inspected without pulling in the
HTTP and iCalendar stacks; import the submodules for the actual functionality.
"""

__version__ = "0.1.0"
