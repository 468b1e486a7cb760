"""Offline-first sync for the FoodJourney client. Centres around the `OfflineSession`.

Why is this hard?

- Writes made offline have to reach the server later, in the order they were
  made, even across restarts.
- The UI must show those writes before the server has confirmed them, then
  swap in the server's ids without duplicates or orphans.
- Reads come from a snapshot that is replaced wholesale, never patched.

What it does not do:

- Deduplicate. Two identical offline writes become two server records.
- Exactly-once delivery. A crash mid-drain replays the confirmed write.
- Cap the queue.
"""
