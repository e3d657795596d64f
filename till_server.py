"""
Till HTTP API: catalog lookup, cart, checkout and offline sync status.

Run:
  python till_server.py
"""
import os

from flask import Flask, jsonify, request

from till_config import configure_logging
from till_errors import EmptyCartError, PersistenceError, StockUnavailableError, UnknownProductError
from till_models import Disposition
from till_runtime import TillRuntime


def _as_int(value, default=None):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def create_app(runtime: TillRuntime = None) -> Flask:
    app = Flask(__name__)
    runtime = runtime or TillRuntime()
    app.config['TILL_RUNTIME'] = runtime

    def _product_payload(product):
        data = product.to_dict()
        data['stock'] = runtime.projection.projected_stock(product.id)
        return data

    @app.before_request
    def _bootstrap_background_services():
        """Start the probe and the reconciliation driver on first inbound request."""
        if not app.config.get('TESTING'):
            runtime.start()

    @app.after_request
    def add_no_cache_headers(response):
        response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
        response.headers['X-Content-Type-Options'] = 'nosniff'
        return response

    @app.get('/health')
    def health():
        return 'ok', 200

    @app.route('/api/items')
    def get_items():
        items = [_product_payload(p) for p in runtime.catalog.all()]
        return jsonify({'status': 'success', 'items': items})

    @app.route('/api/items/search')
    def search_items():
        term = request.args.get('q', '')
        limit = _as_int(request.args.get('limit'), 5)
        items = [_product_payload(p) for p in runtime.catalog.search(term, limit=limit)]
        return jsonify({'status': 'success', 'items': items})

    @app.route('/api/lookup-barcode')
    def lookup_barcode():
        product = runtime.catalog.find_by_barcode(request.args.get('barcode', ''))
        if product is None:
            return jsonify({'status': 'error', 'message': 'Product not found for this barcode.'}), 404
        return jsonify({'status': 'success', 'item': _product_payload(product)})

    @app.route('/api/cart')
    def get_cart():
        return jsonify({'status': 'success', 'cart': runtime.cart.to_dict()})

    @app.route('/api/cart/items', methods=['POST'])
    def add_cart_item():
        data = request.get_json(silent=True) or {}
        try:
            if data.get('barcode'):
                runtime.cart.scan_barcode(str(data['barcode']))
            else:
                product_id = data.get('product_id')
                if not product_id:
                    return jsonify({'status': 'error', 'message': 'product_id or barcode is required'}), 400
                runtime.cart.add_product(str(product_id), _as_int(data.get('quantity'), 1))
        except UnknownProductError as exc:
            return jsonify({'status': 'error', 'message': str(exc)}), 404
        except (StockUnavailableError, ValueError) as exc:
            return jsonify({'status': 'error', 'message': str(exc)}), 409
        return jsonify({'status': 'success', 'cart': runtime.cart.to_dict()})

    @app.route('/api/cart/items/<product_id>', methods=['PATCH'])
    def update_cart_item(product_id):
        data = request.get_json(silent=True) or {}
        quantity = _as_int(data.get('quantity'))
        if quantity is None:
            return jsonify({'status': 'error', 'message': 'quantity is required'}), 400
        try:
            runtime.cart.update_quantity(product_id, quantity)
        except UnknownProductError as exc:
            return jsonify({'status': 'error', 'message': str(exc)}), 404
        except (StockUnavailableError, ValueError) as exc:
            return jsonify({'status': 'error', 'message': str(exc)}), 409
        return jsonify({'status': 'success', 'cart': runtime.cart.to_dict()})

    @app.route('/api/cart/items/<product_id>', methods=['DELETE'])
    def remove_cart_item(product_id):
        runtime.cart.remove(product_id)
        return jsonify({'status': 'success', 'cart': runtime.cart.to_dict()})

    @app.route('/api/create-sale', methods=['POST'])
    def create_sale():
        try:
            disposition = runtime.capture.complete_sale(runtime.cart)
        except EmptyCartError:
            return jsonify({'status': 'error', 'message': 'Items are required'}), 400
        except StockUnavailableError as exc:
            return jsonify({'status': 'error', 'message': str(exc), 'product_id': exc.product_id,
                            'available': exc.available}), 409
        except PersistenceError:
            app.logger.exception('Failed to save sale offline')
            return jsonify({'status': 'error', 'message': 'Sale not saved, please retry'}), 500
        sale = runtime.capture.last_sale
        if disposition == Disposition.SUBMITTED:
            message = 'Sale completed successfully'
        else:
            message = 'Sale saved offline and will sync automatically when reconnected'
        return jsonify({
            'status': 'success',
            'disposition': disposition.value,
            'sale_id': sale.sale_id if sale else None,
            'total': sale.total if sale else 0,
            'message': message,
        })

    @app.route('/api/sales/status')
    def sales_status():
        try:
            payload = runtime.status()
        except PersistenceError as exc:
            app.logger.error('Offline queue unreadable: %s', exc)
            return jsonify({'status': 'error', 'message': str(exc)}), 500
        payload['status'] = 'success'
        last = payload.get('last_drain_result')
        if payload['has_pending_sales'] and last and last.get('error'):
            payload['warning'] = f"{payload['pending_count']} sale(s) pending, last sync failed"
        return jsonify(payload)

    @app.route('/api/admin/sync', methods=['POST'])
    def trigger_sync():
        if not runtime.monitor.is_online:
            return jsonify({'status': 'error', 'message': 'Till is offline'}), 409
        started = runtime.driver.trigger(background=not app.config.get('TESTING'))
        return jsonify({'status': 'started' if started else 'busy'}), 202

    @app.route('/api/connectivity', methods=['POST'])
    def set_connectivity():
        data = request.get_json(silent=True) or {}
        if 'online' not in data:
            return jsonify({'status': 'error', 'message': 'online flag is required'}), 400
        runtime.monitor.set_online(bool(data['online']))
        return jsonify({'status': 'success', 'online': runtime.monitor.is_online})

    return app


def main():
    configure_logging('till-server')
    runtime = TillRuntime()
    app = create_app(runtime)
    runtime.start()
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    host = os.getenv('HOST', '0.0.0.0')
    try:
        app.run(host=host, port=port, debug=debug, use_reloader=False)
    finally:
        runtime.stop()


if __name__ == '__main__':
    main()
