"""
Background CSV import: parse an uploaded sheet, geocode what needs it and
add the rows as markers to one map, reporting progress on a job document
in ``csvUploadJobs/{jobId}``.
"""
import io
import csv
import time
import logging
import threading

from firebase_admin import firestore as fb_firestore

from Mapies import map_store
from Mapies.classes import Marker, AddressData, ColumnMapping
from Mapies.errors import NotFound, FailedPrecondition
from Mapies.plans import get_user_limits, can_user_perform_action
from Mapies.utility_functions import parse_coordinate, coordinates_in_range, check_for_duplicates


logger = logging.getLogger(__name__)

JOBS_COLLECTION = "csvUploadJobs"
MAX_CSV_BYTES = 900_000  # Firestore docs cap at 1 MiB
ROW_DELAY = 1.0
GEOCODE_ATTEMPTS = 3
GEOCODE_RETRY_DELAY = 2.0


class CsvParseError(Exception):
    pass


def parse_csv(csv_content):
    """
    Returns a list of dicts keyed by the (trimmed) header row. Blank lines
    are dropped and short rows padded with empty strings.
    """
    try:
        reader = csv.reader(io.StringIO(csv_content), skipinitialspace=True)
        rows = [[cell.strip() for cell in row] for row in reader]
    except csv.Error as e:
        raise CsvParseError(str(e))

    rows = [row for row in rows if any(row)]
    if not rows:
        return []

    header = rows[0]
    records = []
    for row in rows[1:]:
        record = {}
        for i, column in enumerate(header):
            record[column] = row[i] if i < len(row) else ''
        records.append(record)
    return records


def extract_rows(records, mapping):
    """Returns (rows, skipped) where rows are AddressData ready for import."""
    rows = []
    skipped = 0
    for index, record in enumerate(records):
        name = (record.get(mapping.name) or '').strip()
        address = (record.get(mapping.address) or '').strip() if mapping.address else ''

        lat = lng = None
        if mapping.has_coordinates():
            lat = parse_coordinate(record.get(mapping.lat))
            lng = parse_coordinate(record.get(mapping.lng))
            if lat is None or lng is None:
                lat = lng = None
            elif not coordinates_in_range(lat, lng):
                logger.info("Row %d skipped: coordinates out of range (%s, %s)", index + 1, lat, lng)
                skipped += 1
                continue

        if not name:
            skipped += 1
            continue
        if not address and lat is None:
            skipped += 1
            continue

        rows.append(AddressData(name, address, lat, lng, row_index=index + 1))
    return rows, skipped


class CsvProcessingService:
    def __init__(self, db, geocoder, sleep=time.sleep, run_async=True):
        self.db = db
        self.geocoder = geocoder
        self.sleep = sleep
        self.run_async = run_async

    def job_ref(self, job_id):
        return self.db.collection(JOBS_COLLECTION).document(job_id)

    def get_job(self, job_id):
        doc = self.job_ref(job_id).get()
        if not doc.exists:
            return None
        job = doc.to_dict()
        job['id'] = doc.id
        return job

    def create_job(self, user_id, map_id, file_name, column_mapping, csv_content=None):
        ref = self.db.collection(JOBS_COLLECTION).document()
        job = {
            "id": ref.id,
            "userId": user_id,
            "mapId": map_id,
            "fileName": file_name,
            "status": "pending",
            "progress": {
                "total": 0,
                "processed": 0,
                "geocodingFailures": 0,
                "duplicates": 0,
                "skipped": 0,
                "currentStep": "Initializing...",
                "stepProgress": 0,
                "stepTotal": 0,
            },
            "columnMapping": column_mapping.to_dict(),
            "results": {"markersAdded": 0, "errors": [], "processingTime": 0},
            "createdAt": fb_firestore.SERVER_TIMESTAMP,
            "updatedAt": fb_firestore.SERVER_TIMESTAMP,
        }
        if csv_content is not None and len(csv_content.encode('utf-8')) <= MAX_CSV_BYTES:
            job["csvContent"] = csv_content
        ref.set(job)
        logger.info("Created CSV job %s for map %s (%s)", ref.id, map_id, file_name)
        return ref.id

    def update_job_progress(self, job_id, status=None, results=None, **progress):
        updates = {"updatedAt": fb_firestore.SERVER_TIMESTAMP}
        if status is not None:
            updates["status"] = status
        if results is not None:
            updates["results"] = results
        for key, value in progress.items():
            updates[f"progress.{key}"] = value
        try:
            self.job_ref(job_id).update(updates)
        except Exception:
            logger.exception("Error updating job progress for %s", job_id)

    def start(self, csv_content, mapping, job_id, user_id, map_id):
        if self.run_async:
            worker = threading.Thread(
                target=self._process_logged,
                args=(csv_content, mapping, job_id, user_id, map_id),
                daemon=True,
            )
            worker.start()
        else:
            self._process_logged(csv_content, mapping, job_id, user_id, map_id)

    def _process_logged(self, *args):
        try:
            self.process_csv_file(*args)
        except Exception:
            # already recorded on the job document
            logger.exception("CSV job %s crashed", args[2])

    def process_csv_file(self, csv_content, mapping, job_id, user_id, map_id):
        started = time.monotonic()
        if isinstance(mapping, dict):
            mapping = ColumnMapping.from_dict(mapping)

        try:
            self.update_job_progress(job_id, status="processing", currentStep="Starting CSV processing...")

            try:
                records = parse_csv(csv_content)
            except CsvParseError as e:
                logger.error("CSV parsing failed for job %s: %s", job_id, e)
                self.update_job_progress(
                    job_id, status="failed",
                    results={"markersAdded": 0, "errors": [f"CSV parsing failed: {e}"], "processingTime": 0},
                )
                return

            total = len(records)
            self.update_job_progress(job_id, total=total, stepTotal=total, currentStep="Validating rows...")

            rows, skipped = extract_rows(records, mapping)

            existing = map_store.get_map_markers(self.db, user_id, map_id)
            rows, duplicates = check_for_duplicates(rows, [m.get('address') for m in existing])

            errors = []
            user_doc = self.db.collection("users").document(user_id).get()
            user = user_doc.to_dict() if user_doc.exists else {}
            limits = get_user_limits(user)

            if not can_user_perform_action(user, 'useGeocoding'):
                needs_geocoding = [r for r in rows if not r.has_coords()]
                if needs_geocoding:
                    errors.append("Geocoding not available on current plan")
                    skipped += len(needs_geocoding)
                    rows = [r for r in rows if r.has_coords()]

            remaining = max(0, limits['maxMarkersPerMap'] - len(existing))
            if len(rows) > remaining:
                errors.append(f"Marker limit reached ({limits['maxMarkersPerMap']} per map)")
                skipped += len(rows) - remaining
                rows = rows[:remaining]

            self.update_job_progress(
                job_id, duplicates=len(duplicates), skipped=skipped,
                stepTotal=len(rows), currentStep="Geocoding addresses...",
            )

            markers_added = 0
            geocoding_failures = 0
            n = len(rows)
            for i, row in enumerate(rows):
                self.update_job_progress(
                    job_id, processed=i, stepProgress=i,
                    currentStep=f"Geocoding addresses... ({i + 1}/{n})",
                )
                if i > 0:
                    self.sleep(ROW_DELAY)

                if not row.has_coords():
                    result = self._geocode_with_retries(row.address)
                    if not result.success:
                        geocoding_failures += 1
                        logger.warning("Row %d: geocoding failed for %s (%s)", row.row_index, row.address, result.error)
                        continue
                    row.lat, row.lng = result.lat, result.lng

                try:
                    map_store.add_marker(self.db, user_id, map_id, Marker(row.name, row.address, row.lat, row.lng), enforce_limit=False)
                    markers_added += 1
                except Exception as e:
                    logger.exception("Row %d: failed to add marker %s", row.row_index, row.name)
                    errors.append(f"Row {row.row_index}: {e}")

            self.update_job_progress(
                job_id,
                status="completed",
                results={
                    "markersAdded": markers_added,
                    "errors": errors,
                    "processingTime": int((time.monotonic() - started) * 1000),
                },
                processed=n,
                stepProgress=n,
                geocodingFailures=geocoding_failures,
                currentStep="Completed",
            )
            logger.info("CSV job %s completed: %d markers added, %d geocoding failures", job_id, markers_added, geocoding_failures)
        except Exception as e:
            logger.exception("CSV processing error for job %s", job_id)
            self.update_job_progress(
                job_id, status="failed",
                results={
                    "markersAdded": 0,
                    "errors": [str(e) or "Unknown error"],
                    "processingTime": int((time.monotonic() - started) * 1000),
                },
            )
            raise

    def _geocode_with_retries(self, address):
        result = None
        for attempt in range(1, GEOCODE_ATTEMPTS + 1):
            result = self.geocoder.geocode_address(address)
            if result.success:
                return result
            logger.info("Geocoding attempt %d/%d failed for %s", attempt, GEOCODE_ATTEMPTS, address)
            if attempt < GEOCODE_ATTEMPTS:
                self.sleep(GEOCODE_RETRY_DELAY)
        return result

    def retry_job(self, job_id):
        """
        Resets a failed job. Returns True when the stored CSV was queued for
        processing again, False when the client has to upload it again.
        """
        job = self.get_job(job_id)
        if job is None:
            raise NotFound("Job not found")
        if job.get('status') != 'failed':
            raise FailedPrecondition("Job is not in failed state")

        self.job_ref(job_id).update({
            "status": "pending",
            "progress.processed": 0,
            "progress.geocodingFailures": 0,
            "progress.currentStep": "Retrying job...",
            "results.errors": [],
            "updatedAt": fb_firestore.SERVER_TIMESTAMP,
        })
        logger.info("CSV job %s reset for retry", job_id)

        csv_content = job.get('csvContent')
        if not csv_content:
            return False
        self.start(csv_content, ColumnMapping.from_dict(job.get('columnMapping')), job_id, job['userId'], job['mapId'])
        return True
